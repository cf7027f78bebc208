"""
Shared fixtures: in-memory stand-ins for Firestore-backed stores and a
TestClient wired to them through FastAPI dependency overrides.
"""

import uuid
from typing import Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from app.models.token_model import TokenRecord
from app.services.auth_repository import get_auth_repository
from app.services.oauth_state_service import InMemoryStateStore, get_state_store
from app.services.rate_limit_store import InMemoryRateLimitStore


class FakeAuthRepository:
    """Dict-backed replacement for FirestoreAuthRepository."""

    def __init__(self) -> None:
        self.users: Dict[str, Dict] = {}
        self.tokens: Dict[str, Dict] = {}
        self.upserts: List[TokenRecord] = []
        self.fail_on: set = set()

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise RuntimeError(f"{operation} failed")

    def add_user(self, provider: str = "spotify", provider_id: str = "sp-1", **fields) -> str:
        user_id = fields.pop("user_id", None) or str(uuid.uuid4())
        self.users[user_id] = {
            "id": user_id,
            "provider": provider,
            "provider_id": provider_id,
            **fields,
        }
        return user_id

    def get_user(self, user_id: str) -> Optional[Dict]:
        self._maybe_fail("get_user")
        return self.users.get(user_id)

    def find_user_by_provider(self, provider: str, provider_id: str) -> Optional[Dict]:
        self._maybe_fail("find_user_by_provider")
        for user in self.users.values():
            if user["provider"] == provider and user["provider_id"] == provider_id:
                return user
        return None

    def create_user(self, provider, provider_id, email=None, display_name=None) -> str:
        self._maybe_fail("create_user")
        return self.add_user(provider, provider_id, email=email, display_name=display_name)

    def update_user(self, user_id: str, **fields) -> None:
        self._maybe_fail("update_user")
        self.users[user_id].update(fields)

    def get_token(self, user_id: str) -> Optional[Dict]:
        self._maybe_fail("get_token")
        token = self.tokens.get(user_id)
        return dict(token) if token else None

    def upsert_token(self, record: TokenRecord) -> None:
        self._maybe_fail("upsert_token")
        self.upserts.append(record)
        self.tokens[record.user_id] = record.model_dump(mode="json")

    def delete_token(self, user_id: str) -> None:
        self._maybe_fail("delete_token")
        self.tokens.pop(user_id, None)


@pytest.fixture
def repository() -> FakeAuthRepository:
    return FakeAuthRepository()


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore(ttl_seconds=600)


@pytest.fixture
def rate_limit_events() -> List[Tuple[str, str]]:
    return []


@pytest.fixture
def app(repository, state_store, rate_limit_events):
    application = create_app(
        rate_limit_store=InMemoryRateLimitStore(),
        rate_limit_event_logger=lambda key, path: rate_limit_events.append((key, path)),
    )
    application.dependency_overrides[get_auth_repository] = lambda: repository
    application.dependency_overrides[get_state_store] = lambda: state_store
    return application


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture(autouse=True)
def no_firestore_error_logs(monkeypatch):
    """Keep error-log writes away from Firestore during tests."""
    written: List[Tuple] = []
    monkeypatch.setattr(
        "app.services.error_log_service.log_error_event",
        lambda *args, **kwargs: written.append((args, kwargs)) or True,
    )
    return written
