# app/services/auth_repository.py
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from app.models.token_model import TokenRecord
from app.services.firestore_client import get_db
from app.services.token_refresh import format_timestamp

USERS_COLLECTION = "users"
TOKENS_COLLECTION = "auth_tokens"


def _now_iso() -> str:
    return format_timestamp(datetime.now(timezone.utc))


class FirestoreAuthRepository:
    """
    users / auth_tokens 兩個 collection 的存取。
    auth_tokens 的 document id 就是 user_id → set() 等於 upsert，一個 user 只有一筆 token。
    """

    def __init__(self, db=None):
        self._db = db

    @property
    def db(self):
        # Lazy：import 時不連 Firestore
        if self._db is None:
            self._db = get_db()
        return self._db

    # --------------------------
    # users
    # --------------------------
    def get_user(self, user_id: str) -> Optional[Dict]:
        doc = self.db.collection(USERS_COLLECTION).document(user_id).get()
        if not doc.exists:
            return None
        data = doc.to_dict()
        data["id"] = doc.id
        return data

    def find_user_by_provider(self, provider: str, provider_id: str) -> Optional[Dict]:
        q = (
            self.db.collection(USERS_COLLECTION)
            .where("provider", "==", provider)
            .where("provider_id", "==", provider_id)
            .limit(1)
            .stream()
        )
        for doc in q:
            data = doc.to_dict()
            data["id"] = doc.id
            return data
        return None

    def create_user(self, provider: str, provider_id: str, email=None, display_name=None) -> str:
        user_id = str(uuid.uuid4())
        now = _now_iso()
        self.db.collection(USERS_COLLECTION).document(user_id).set({
            "provider": provider,
            "provider_id": provider_id,
            "email": email,
            "display_name": display_name,
            "created_at": now,
            "updated_at": now,
        })
        return user_id

    def update_user(self, user_id: str, **fields) -> None:
        fields["updated_at"] = _now_iso()
        self.db.collection(USERS_COLLECTION).document(user_id).update(fields)

    # --------------------------
    # auth_tokens
    # --------------------------
    def get_token(self, user_id: str) -> Optional[Dict]:
        doc = self.db.collection(TOKENS_COLLECTION).document(user_id).get()
        return doc.to_dict() if doc.exists else None

    def upsert_token(self, record: TokenRecord) -> None:
        data = record.model_dump(mode="json")
        data["updated_at"] = data.get("updated_at") or _now_iso()
        self.db.collection(TOKENS_COLLECTION).document(record.user_id).set(data)

    def delete_token(self, user_id: str) -> None:
        self.db.collection(TOKENS_COLLECTION).document(user_id).delete()


_repository: Optional[FirestoreAuthRepository] = None


def get_auth_repository() -> FirestoreAuthRepository:
    global _repository
    if _repository is None:
        _repository = FirestoreAuthRepository()
    return _repository
