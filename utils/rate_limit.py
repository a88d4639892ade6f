# utils/rate_limit.py
# 按客户端 IP 的固定窗口限流，读接口和写接口各自独立计数
import threading
import time
from functools import wraps

from flask import request, jsonify, current_app

from utils.errors import AdmissionDenied

# 每个桶每窗口允许的请求数
DEFAULT_LIMITS = {
    "read": 30,
    "write": 10,
    "claim": 5,
    "verify": 10,
}


class RateLimiter:
    """
    进程内实现。{(bucket, client_key): [window_start, count]}
    过期记录在每 sweep_every 次请求、或条目数超过 max_keys 时清理
    """

    def __init__(self, window=60, limits=None, max_keys=10000, sweep_every=500, clock=time.monotonic):
        self.window = window
        self.limits = dict(DEFAULT_LIMITS, **(limits or {}))
        self.max_keys = max_keys
        self.sweep_every = sweep_every
        self.clock = clock
        self._lock = threading.Lock()
        self._records = {}
        self._admits = 0

    def admit(self, client_key, bucket="read") -> bool:
        ceiling = self.limits.get(bucket, self.limits["read"])
        now = self.clock()
        key = (bucket, client_key)
        with self._lock:
            self._admits += 1
            if self._admits % self.sweep_every == 0 or len(self._records) > self.max_keys:
                self._sweep(now)

            record = self._records.get(key)
            if record is None or now - record[0] > self.window:
                self._records[key] = [now, 1]
                return True
            record[1] += 1
            return record[1] <= ceiling

    def _sweep(self, now):
        stale = [k for k, (start, _) in self._records.items() if now - start > self.window]
        for k in stale:
            del self._records[k]

    def __len__(self):
        with self._lock:
            return len(self._records)


class RedisRateLimiter(RateLimiter):
    """
    Redis 实现，多实例共享同一个窗口；过期由 Redis 的 TTL 负责，无需手动清理
    """

    def __init__(self, redis_conn, window=60, limits=None, prefix="invite:rl:"):
        super().__init__(window=window, limits=limits)
        self.redis = redis_conn
        self.prefix = prefix

    def admit(self, client_key, bucket="read") -> bool:
        ceiling = self.limits.get(bucket, self.limits["read"])
        key = f"{self.prefix}{bucket}:{client_key}"
        pipe = self.redis.pipeline()
        pipe.set(key, 0, ex=self.window, nx=True)
        pipe.incr(key)
        _, count = pipe.execute()
        return int(count) <= ceiling

    def __len__(self):
        return 0


def client_key():
    """
    客户端地址只取 remote_addr。部署在反向代理后面时由 ProxyFix（PROXY_FIX_X_FOR）
    按可信代理层数改写，客户端自己带的 X-Forwarded-For 不参与计数
    """
    return request.remote_addr or 'unknown'


def rate_limited(bucket):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            limiter = current_app.extensions['invite_services'].rate_limiter
            if not limiter.admit(client_key(), bucket):
                current_app.logger.info(f"[rate_limit] {client_key()} 超出 {bucket} 限额")
                e = AdmissionDenied()
                return jsonify(e.to_dict()), e.status_code
            return f(*args, **kwargs)
        return decorated_function
    return decorator
