# app/services/refresh_lock.py
import threading
from contextlib import contextmanager
from typing import Dict


class KeyedLock:
    """
    每個 key（user_id）一把 lock。
    同一個 user 同時打兩次 /refresh 時只讓一個真的去換 token，
    不然兩邊拿同一個 refresh_token 去換，其中一個可能會讓另一個失效。
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                # 沒人在等就清掉，避免 dict 一直長大
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


refresh_locks = KeyedLock()
