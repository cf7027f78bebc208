"""
Route tests for /api/auth/*. Firestore and the Spotify/Apple calls are
replaced with fakes from conftest and monkeypatch.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.services import apple_music_service, spotify_token_service
from app.services.apple_music_service import AppleMusicConfigError
from app.services.jwt_service import decode_session_token
from app.services.token_refresh import RefreshResult, format_timestamp


def seed_token(repository, provider="spotify", expires_in=timedelta(hours=1), refresh_token="refresh-1"):
    user_id = repository.add_user(provider=provider, provider_id=f"{provider}-id", display_name="Ana")
    repository.tokens[user_id] = {
        "user_id": user_id,
        "provider": provider,
        "access_token": "stored-access",
        "refresh_token": refresh_token,
        "expires_at": format_timestamp(datetime.now(timezone.utc) + expires_in),
    }
    return user_id


def redirect_query(response):
    location = urlparse(response.headers["location"])
    return location, {k: v[0] for k, v in parse_qs(location.query).items()}


@pytest.fixture
def spotify_ok(monkeypatch):
    monkeypatch.setattr(
        spotify_token_service,
        "exchange_authorization_code",
        lambda code: {"access_token": "acc", "refresh_token": "ref", "expires_in": 3600},
    )
    monkeypatch.setattr(
        spotify_token_service,
        "fetch_spotify_profile",
        lambda token: {"id": "sp-99", "email": "ana@example.com", "display_name": "Ana"},
    )


class TestSpotifyLogin:

    def test_returns_auth_url_and_saves_state(self, client, state_store) -> None:
        response = client.post("/api/auth/spotify")

        assert response.status_code == 200
        body = response.json()
        url = urlparse(body["authUrl"])
        params = parse_qs(url.query)
        assert body["authUrl"].startswith(spotify_token_service.SPOTIFY_AUTH_URL)
        assert params["state"] == [body["state"]]
        assert params["response_type"] == ["code"]
        assert "user-read-currently-playing" in params["scope"][0]
        assert len(body["state"]) == 32
        assert len(state_store) == 1


class TestSpotifyCallback:

    def test_success_creates_user_and_stores_tokens(self, client, state_store, repository, spotify_ok) -> None:
        state_store.save_state("state-1", "spotify")

        response = client.get(
            "/api/auth/callback", params={"code": "c", "state": "state-1"}, follow_redirects=False
        )

        assert response.status_code in (302, 307)
        location, query = redirect_query(response)
        assert f"{location.scheme}://{location.netloc}" == settings.FRONTEND_URL
        assert location.path == "/now-playing"
        assert query["provider"] == "spotify"
        user_id = query["userId"]
        assert decode_session_token(query["token"]) == user_id

        assert repository.users[user_id]["provider_id"] == "sp-99"
        stored = repository.tokens[user_id]
        assert stored["access_token"] == "acc"
        assert stored["refresh_token"] == "ref"
        assert stored["provider"] == "spotify"

    def test_existing_user_is_updated_not_duplicated(self, client, state_store, repository, spotify_ok) -> None:
        user_id = repository.add_user("spotify", "sp-99", email="old@example.com")
        state_store.save_state("state-1", "spotify")

        response = client.get(
            "/api/auth/callback", params={"code": "c", "state": "state-1"}, follow_redirects=False
        )

        _, query = redirect_query(response)
        assert query["userId"] == user_id
        assert len(repository.users) == 1
        assert repository.users[user_id]["email"] == "ana@example.com"

    def test_state_is_single_use(self, client, state_store, spotify_ok) -> None:
        state_store.save_state("state-1", "spotify")
        client.get("/api/auth/callback", params={"code": "c", "state": "state-1"}, follow_redirects=False)

        response = client.get(
            "/api/auth/callback", params={"code": "c", "state": "state-1"}, follow_redirects=False
        )

        location, query = redirect_query(response)
        assert location.path == "/welcome"
        assert query["error"] == "invalid_state"

    @pytest.mark.parametrize(
        "params, saved_provider, expected",
        [
            ({"error": "access_denied"}, None, "access_denied"),
            ({"code": "c", "state": "unknown"}, None, "invalid_state"),
            ({"code": "c"}, None, "invalid_state"),
            ({"code": "c", "state": "state-1"}, "apple", "provider_mismatch"),
        ],
    )
    def test_error_redirects(self, client, state_store, params, saved_provider, expected) -> None:
        if saved_provider:
            state_store.save_state("state-1", saved_provider)

        response = client.get("/api/auth/callback", params=params, follow_redirects=False)

        location, query = redirect_query(response)
        assert location.path == "/welcome"
        assert query["error"] == expected

    def test_token_exchange_failure(self, client, state_store, monkeypatch) -> None:
        monkeypatch.setattr(spotify_token_service, "exchange_authorization_code", lambda code: None)
        state_store.save_state("state-1", "spotify")

        response = client.get(
            "/api/auth/callback", params={"code": "bad", "state": "state-1"}, follow_redirects=False
        )

        assert redirect_query(response)[1]["error"] == "token_exchange_failed"

    def test_profile_failure(self, client, state_store, monkeypatch, spotify_ok) -> None:
        monkeypatch.setattr(spotify_token_service, "fetch_spotify_profile", lambda token: None)
        state_store.save_state("state-1", "spotify")

        response = client.get(
            "/api/auth/callback", params={"code": "c", "state": "state-1"}, follow_redirects=False
        )

        assert redirect_query(response)[1]["error"] == "user_fetch_failed"

    @pytest.mark.parametrize(
        "failing, expected",
        [
            ("find_user_by_provider", "database_error"),
            ("create_user", "user_creation_failed"),
            ("upsert_token", "token_storage_failed"),
        ],
    )
    def test_storage_failures(self, client, state_store, repository, spotify_ok, failing, expected) -> None:
        repository.fail_on.add(failing)
        state_store.save_state("state-1", "spotify")

        response = client.get(
            "/api/auth/callback", params={"code": "c", "state": "state-1"}, follow_redirects=False
        )

        assert redirect_query(response)[1]["error"] == expected


class TestAppleAuth:

    def test_returns_developer_token(self, client, state_store, monkeypatch) -> None:
        monkeypatch.setattr(apple_music_service, "generate_developer_token", lambda: "dev-token")

        response = client.post("/api/auth/apple")

        assert response.status_code == 200
        body = response.json()
        assert body["developerToken"] == "dev-token"
        assert state_store.pop_state(body["state"])["provider"] == "apple"

    def test_missing_configuration(self, client, monkeypatch) -> None:
        def broken():
            raise AppleMusicConfigError("Missing Apple Music configuration")

        monkeypatch.setattr(apple_music_service, "generate_developer_token", broken)

        response = client.post("/api/auth/apple")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "AUTH_INIT_FAILED"
        assert response.json()["error"]["retryable"] is True

    def test_callback_creates_user_with_long_lived_token(self, client, state_store, repository) -> None:
        state_store.save_state("apple-state", "apple")

        response = client.post(
            "/api/auth/apple/callback", json={"musicUserToken": "mut-1", "state": "apple-state"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["provider"] == "apple"
        assert body["message"] == "Authentication successful"
        assert decode_session_token(body["token"]) == body["userId"]

        stored = repository.tokens[body["userId"]]
        assert stored["access_token"] == "mut-1"
        assert stored["refresh_token"] == ""
        expires_at = datetime.fromisoformat(stored["expires_at"].replace("Z", "+00:00"))
        assert expires_at - datetime.now(timezone.utc) > timedelta(days=179)

    def test_same_music_user_token_maps_to_same_user(self, client, state_store, repository) -> None:
        ids = []
        for state in ("s1", "s2"):
            state_store.save_state(state, "apple")
            ids.append(
                client.post("/api/auth/apple/callback", json={"musicUserToken": "mut-1", "state": state})
                .json()["userId"]
            )

        assert ids[0] == ids[1]
        assert len(repository.users) == 1

    @pytest.mark.parametrize(
        "saved_provider, payload, expected",
        [
            (None, {"musicUserToken": "m", "state": "nope"}, "INVALID_STATE"),
            ("spotify", {"musicUserToken": "m", "state": "s"}, "PROVIDER_MISMATCH"),
            ("apple", {"state": "s"}, "MISSING_TOKEN"),
        ],
    )
    def test_callback_validation(self, client, state_store, saved_provider, payload, expected) -> None:
        if saved_provider:
            state_store.save_state("s", saved_provider)

        response = client.post("/api/auth/apple/callback", json=payload)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == expected

    def test_callback_storage_failure(self, client, state_store, repository) -> None:
        repository.fail_on.add("upsert_token")
        state_store.save_state("s", "apple")

        response = client.post("/api/auth/apple/callback", json={"musicUserToken": "m", "state": "s"})

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "TOKEN_STORAGE_FAILED"


class TestRefreshRoute:

    def test_valid_token_is_returned(self, client, repository) -> None:
        user_id = seed_token(repository)

        response = client.post("/api/auth/refresh", json={"userId": user_id})

        assert response.status_code == 200
        body = response.json()
        assert body["accessToken"] == "stored-access"
        assert body["refreshed"] is False
        assert response.headers["X-RateLimit-Limit"] == "100"

    def test_expiring_token_is_refreshed(self, client, repository, monkeypatch) -> None:
        user_id = seed_token(repository, expires_in=timedelta(minutes=2))
        monkeypatch.setattr(
            spotify_token_service,
            "refresh_spotify_token",
            lambda refresh_token: RefreshResult(success=True, access_token="fresh", expires_in=3600),
        )

        response = client.post("/api/auth/refresh", json={"userId": user_id})

        assert response.status_code == 200
        body = response.json()
        assert body["accessToken"] == "fresh"
        assert body["refreshed"] is True
        assert repository.tokens[user_id]["access_token"] == "fresh"
        assert repository.tokens[user_id]["refresh_token"] == "refresh-1"

    def test_refresh_failure(self, client, repository, monkeypatch) -> None:
        user_id = seed_token(repository, expires_in=timedelta(minutes=-10))
        monkeypatch.setattr(
            spotify_token_service, "refresh_spotify_token", lambda refresh_token: RefreshResult(success=False)
        )

        response = client.post("/api/auth/refresh", json={"userId": user_id})

        assert response.status_code == 401
        assert response.json() == {
            "error": {"message": "Failed to refresh token", "code": "REFRESH_FAILED", "retryable": False}
        }
        assert repository.tokens[user_id]["access_token"] == "stored-access"

    def test_malformed_token_endpoint_body_is_refresh_failed(self, client, repository, monkeypatch) -> None:
        user_id = seed_token(repository, expires_in=timedelta(minutes=-10))
        response_body = Mock(status_code=200, ok=True, text="")
        response_body.json.return_value = {"access_token": "new", "expires_in": None}
        monkeypatch.setattr(spotify_token_service.requests, "post", lambda *args, **kwargs: response_body)

        response = client.post("/api/auth/refresh", json={"userId": user_id})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "REFRESH_FAILED"
        assert response.json()["error"]["retryable"] is False
        assert repository.tokens[user_id]["access_token"] == "stored-access"

    def test_empty_refresh_token_requires_reauth(self, client, repository) -> None:
        user_id = seed_token(repository, expires_in=timedelta(minutes=-10), refresh_token="")

        response = client.post("/api/auth/refresh", json={"userId": user_id})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "EMPTY_REFRESH_TOKEN"

    @pytest.mark.parametrize("payload", [None, {}, {"userId": ""}])
    def test_missing_user_id(self, client, payload) -> None:
        response = client.post("/api/auth/refresh", json=payload)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MISSING_USER_ID"

    def test_unknown_user(self, client) -> None:
        response = client.post("/api/auth/refresh", json={"userId": "ghost"})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "USER_NOT_FOUND"

    def test_unexpected_error_is_reported_as_refresh_error(self, client, repository) -> None:
        user_id = seed_token(repository)
        repository.fail_on.add("get_token")

        response = client.post("/api/auth/refresh", json={"userId": user_id})

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "REFRESH_ERROR"
        assert response.json()["error"]["retryable"] is True

    def test_app_errors_are_written_to_error_log(self, client, repository, monkeypatch,
                                                 no_firestore_error_logs) -> None:
        user_id = seed_token(repository, expires_in=timedelta(minutes=-10))
        monkeypatch.setattr(
            spotify_token_service, "refresh_spotify_token", lambda refresh_token: RefreshResult(success=False)
        )

        client.post("/api/auth/refresh", json={"userId": user_id})
        client.post("/api/auth/refresh", json={})

        codes = [args[0] for args, _ in no_firestore_error_logs]
        assert codes == ["REFRESH_FAILED"]


class TestLogoutAndStatus:

    def test_logout_deletes_tokens(self, client, repository) -> None:
        user_id = seed_token(repository)

        response = client.post("/api/auth/logout", json={"userId": user_id})

        assert response.json() == {"message": "Logged out successfully", "success": True}
        assert user_id not in repository.tokens
        assert user_id in repository.users

    def test_logout_without_user_id(self, client) -> None:
        response = client.post("/api/auth/logout", json={})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MISSING_USER_ID"

    def test_logout_failure(self, client, repository) -> None:
        repository.fail_on.add("delete_token")

        response = client.post("/api/auth/logout", json={"userId": "u"})

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "LOGOUT_FAILED"

    def test_status_authenticated(self, client, repository) -> None:
        user_id = seed_token(repository)

        body = client.get(f"/api/auth/status/{user_id}").json()

        assert body["authenticated"] is True
        assert body["tokenExpired"] is False
        assert body["user"]["id"] == user_id
        assert body["user"]["displayName"] == "Ana"

    def test_status_expired(self, client, repository) -> None:
        user_id = seed_token(repository, expires_in=timedelta(minutes=-1))

        body = client.get(f"/api/auth/status/{user_id}").json()

        assert body["authenticated"] is False
        assert body["tokenExpired"] is True

    def test_status_without_tokens(self, client, repository) -> None:
        user_id = repository.add_user()

        body = client.get(f"/api/auth/status/{user_id}").json()

        assert body["authenticated"] is False
        assert "tokenExpired" not in body

    def test_status_unknown_user(self, client) -> None:
        response = client.get("/api/auth/status/ghost")

        assert response.status_code == 404
        assert response.json()["authenticated"] is False


class TestAppLevel:

    def test_health(self, client) -> None:
        response = client.get("/health")

        assert response.json()["status"] == "ok"
        assert "X-RateLimit-Limit" not in response.headers

    def test_unknown_route_uses_error_envelope(self, client) -> None:
        response = client.get("/api/nope")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
        assert response.json()["error"]["retryable"] is False

    def test_unhandled_errors_become_internal_error(self, app) -> None:
        @app.get("/api/boom")
        def boom():
            raise RuntimeError("kaboom")

        response = TestClient(app, raise_server_exceptions=False).get("/api/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"
        assert response.json()["error"]["retryAfter"] == 3

    def test_rate_limit_applies_to_auth_routes(self, client, rate_limit_events, repository) -> None:
        user_id = seed_token(repository)
        for _ in range(100):
            assert client.get(f"/api/auth/status/{user_id}", params={"userId": user_id}).status_code == 200

        response = client.get(f"/api/auth/status/{user_id}", params={"userId": user_id})

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0
        assert response.json()["error"]["code"] == "RATE_LIMITED"
