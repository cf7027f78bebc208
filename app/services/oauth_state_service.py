# app/services/oauth_state_service.py
import secrets
import threading
import time
from typing import Callable, Dict, Optional

from app.config import settings
from app.services.firestore_client import get_db

STATE_COLLECTION = "oauth_states"


def generate_state() -> str:
    return secrets.token_hex(16)


class InMemoryStateStore:
    """
    單一 instance 用的 OAuth state 暫存。
    每次 save 時順便清掉過期的 state，避免堆積。
    """

    def __init__(self, ttl_seconds: int = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.OAUTH_STATE_TTL_SECONDS
        self._clock = clock
        self._states: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def save_state(self, state: str, provider: str) -> None:
        now = self._clock()
        with self._lock:
            self._states[state] = {"provider": provider, "created_at": now}
            self._sweep(now)

    def pop_state(self, state: str) -> Optional[Dict]:
        """
        讀出並刪除 state（只能用一次）。
        - 不存在 / 已過期 → None
        """
        with self._lock:
            data = self._states.pop(state, None)
        if data is None:
            return None
        if data["created_at"] + self.ttl_seconds < self._clock():
            return None
        return data

    def sweep(self) -> int:
        with self._lock:
            return self._sweep(self._clock())

    def _sweep(self, now: float) -> int:
        expired = [k for k, v in self._states.items() if v["created_at"] + self.ttl_seconds < now]
        for k in expired:
            del self._states[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._states)


class FirestoreStateStore:
    """多 instance（Cloud Run / Render）時用 Firestore 存 state，instance 重啟也不會掉"""

    def __init__(self, ttl_seconds: int = None, db=None):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.OAUTH_STATE_TTL_SECONDS
        self._db = db

    @property
    def db(self):
        if self._db is None:
            self._db = get_db()
        return self._db

    def save_state(self, state: str, provider: str) -> None:
        now = int(time.time())
        self.db.collection(STATE_COLLECTION).document(state).set({
            "provider": provider,
            "created_at": now,
            "expires_at": now + self.ttl_seconds,
        })

    def pop_state(self, state: str) -> Optional[Dict]:
        doc_ref = self.db.collection(STATE_COLLECTION).document(state)
        doc = doc_ref.get()

        if not doc.exists:
            return None

        data = doc.to_dict()
        # 讀完就刪（不管有沒有過期）
        doc_ref.delete()

        expires_at = data.get("expires_at")
        if expires_at is not None and expires_at < int(time.time()):
            return None

        return data


_state_store = None


def get_state_store():
    global _state_store
    if _state_store is None:
        if settings.OAUTH_STATE_BACKEND == "firestore":
            _state_store = FirestoreStateStore()
        else:
            _state_store = InMemoryStateStore()
    return _state_store
