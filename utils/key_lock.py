# utils/key_lock.py
# 按 key 串行化的锁：同一钱包 / 同一邀请码的读-改-写必须排队执行
import logging
import threading
from contextlib import contextmanager, ExitStack

from redis.exceptions import LockError

logger = logging.getLogger("key_lock")


class LockTimeout(Exception):
    pass


class _LocalLease:
    """进程内锁没有过期时间，续期无事可做"""

    def extend(self):
        return True


class _RedisLease:
    def __init__(self, lock, key, lease):
        self.lock = lock
        self.key = key
        self.lease = lease

    def extend(self):
        """把剩余持有时间重置为一个完整 lease，长任务每完成一段调用一次"""
        try:
            self.lock.extend(self.lease, replace_ttl=True)
        except LockError as e:
            logger.warning(f"[key_lock] 续期锁 {self.key} 失败: {e}")
            return False
        return True


class KeyedLock:
    """
    进程内实现：每个 key 一把 threading.Lock，引用计数归零后删除，避免无限增长。
    多实例部署时只能保证单实例内串行，需要改用 RedisKeyedLock
    """

    def __init__(self, timeout=30):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks = {}  # key -> [lock, refcount]

    def _acquire_entry(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry

    def _release_entry(self, key, entry):
        with self._guard:
            entry[1] -= 1
            if entry[1] == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    @contextmanager
    def hold(self, key, blocking=True):
        entry = self._acquire_entry(key)
        acquired = entry[0].acquire(timeout=self.timeout) if blocking else entry[0].acquire(blocking=False)
        try:
            if not acquired:
                raise LockTimeout(f"Could not acquire lock {key}")
            yield _LocalLease()
        finally:
            if acquired:
                entry[0].release()
            self._release_entry(key, entry)

    @contextmanager
    def hold_many(self, *keys):
        # 固定顺序加锁，防止两个请求交叉等待
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key))
            yield

    def __len__(self):
        with self._guard:
            return len(self._locks)


class RedisKeyedLock(KeyedLock):
    """
    Redis 实现，所有实例共享。锁带过期时间（lease），进程崩溃后自动释放
    """

    def __init__(self, redis_conn, timeout=30, lease=60, prefix="invite:lock:"):
        super().__init__(timeout=timeout)
        self.redis = redis_conn
        self.lease = lease
        self.prefix = prefix

    @contextmanager
    def hold(self, key, blocking=True):
        lock = self.redis.lock(
            self.prefix + key,
            timeout=self.lease,
            blocking_timeout=self.timeout if blocking else None,
        )
        acquired = lock.acquire(blocking=blocking)
        if not acquired:
            raise LockTimeout(f"Could not acquire lock {key}")
        try:
            yield _RedisLease(lock, key, self.lease)
        finally:
            try:
                lock.release()
            except LockError as e:
                # lease 已过期，锁可能已被别的实例拿走
                logger.warning(f"[key_lock] 释放锁 {key} 失败: {e}")

    def __len__(self):
        return 0
