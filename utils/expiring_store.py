# utils/expiring_store.py
# 带过期时间的 KV：存放已验证会话和一次性 nonce
import threading
import time


class ExpiringStore:
    """进程内实现，过期条目在写入时顺带清理（惰性回收）"""

    def __init__(self, clock=time.time):
        self.clock = clock
        self._lock = threading.Lock()
        self._data = {}  # key -> (value, expires_at)

    def set(self, key, value, ttl):
        now = self.clock()
        with self._lock:
            self._sweep(now)
            self._data[key] = (value, now + ttl)

    def get(self, key):
        now = self.clock()
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at <= now:
                del self._data[key]
                return None
            return value

    def pop(self, key):
        """读取并删除（一次性消费）"""
        now = self.clock()
        with self._lock:
            item = self._data.pop(key, None)
            if item is None or item[1] <= now:
                return None
            return item[0]

    def _sweep(self, now):
        expired = [k for k, (_, exp) in self._data.items() if exp <= now]
        for k in expired:
            del self._data[k]

    def __len__(self):
        with self._lock:
            return len(self._data)


class RedisExpiringStore(ExpiringStore):
    """Redis 实现，过期交给 Redis TTL"""

    def __init__(self, redis_conn, prefix="invite:kv:"):
        super().__init__()
        self.redis = redis_conn
        self.prefix = prefix

    def set(self, key, value, ttl):
        self.redis.set(self.prefix + key, value, ex=int(ttl))

    def get(self, key):
        value = self.redis.get(self.prefix + key)
        return value.decode() if isinstance(value, bytes) else value

    def pop(self, key):
        value = self.redis.getdel(self.prefix + key)
        return value.decode() if isinstance(value, bytes) else value

    def __len__(self):
        return 0
