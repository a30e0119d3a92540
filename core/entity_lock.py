import threading
from contextlib import contextmanager
from typing import Dict, Generator


class KeyedLock:
    """按 key 串行化的进程内锁；无人持有时自动回收，避免字典无限增长。"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Generator[None, None, None]:
        name = str(key or "")
        with self._guard:
            lock = self._locks.setdefault(name, threading.Lock())
            self._waiters[name] = self._waiters.get(name, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[name] -= 1
                if self._waiters[name] <= 0:
                    self._waiters.pop(name, None)
                    self._locks.pop(name, None)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


entity_locks = KeyedLock()


def order_key(payment_order_id: str) -> str:
    return f"order:{payment_order_id}"


def subscription_key(payment_subscription_id: str) -> str:
    return f"subscription:{payment_subscription_id}"


def user_key(user_id: str) -> str:
    return f"user:{user_id}"
