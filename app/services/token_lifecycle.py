# app/services/token_lifecycle.py
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from app.config import settings
from app.models.error_models import AppError
from app.models.token_model import Provider, TokenRecord
from app.services import spotify_token_service
from app.services.refresh_lock import KeyedLock, refresh_locks
from app.services.token_refresh import (
    RefreshAction,
    RefreshResult,
    determine_refresh_action,
    is_expired,
    process_refresh_result,
)

logger = logging.getLogger(__name__)

# error code → HTTP status
REFRESH_ERROR_STATUS = {
    "UNKNOWN_PROVIDER": 400,
    "REFRESH_FAILED": 401,
}


def _token_response(access_token: str, expires_at, refreshed: bool) -> Dict:
    return {"accessToken": access_token, "expiresAt": expires_at, "refreshed": refreshed}


def get_valid_access_token(
    user_id: str,
    repository,
    refresher: Optional[Callable[[str], RefreshResult]] = None,
    locks: KeyedLock = refresh_locks,
    buffer: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> Dict:
    """
    /api/auth/refresh 的主流程：

    1. 讀 user（拿 provider）
    2. 上 per-user lock 後再讀 token（前一個人可能剛 refresh 完）
    3. determine_refresh_action → none / reauth / refresh
    4. refresh 成功才寫回 DB；失敗不動原本的 token
    """
    refresher = refresher or spotify_token_service.refresh_spotify_token
    buffer = buffer if buffer is not None else timedelta(seconds=settings.TOKEN_REFRESH_BUFFER_SECONDS)

    user = repository.get_user(user_id)
    if not user:
        raise AppError("User not found", "USER_NOT_FOUND", 404)

    with locks.hold(user_id):
        token_data = repository.get_token(user_id)
        if not token_data:
            raise AppError("No tokens found for user", "TOKENS_NOT_FOUND", 404)

        provider = user.get("provider") or token_data.get("provider")
        decision = determine_refresh_action(provider, token_data, buffer, now)

        if decision.action == RefreshAction.NONE:
            return _token_response(token_data["access_token"], token_data["expires_at"], False)

        if decision.action == RefreshAction.REAUTH:
            _raise_for_reauth(provider, token_data, decision.reason, now)
            # Apple Music token 很長效，沒真的過期就照用
            return _token_response(token_data["access_token"], token_data["expires_at"], False)

        result = refresher(token_data["refresh_token"])
        processed = process_refresh_result(token_data, result, provider, now)

        if not processed.success:
            logger.warning(f"Token refresh failed for user {user_id}: {processed.error.code}")
            raise AppError(
                processed.error.message,
                processed.error.code,
                REFRESH_ERROR_STATUS.get(processed.error.code, 401),
                processed.error.retryable,
            )

        repository.upsert_token(TokenRecord(
            user_id=user_id,
            provider=provider,
            access_token=processed.access_token,
            refresh_token=processed.refresh_token,
            expires_at=processed.expires_at,
        ))
        logger.info(f"Refreshed Spotify token for user {user_id}, expires at {processed.expires_at}")

        return _token_response(processed.access_token, processed.expires_at, True)


def _raise_for_reauth(provider: str, token_data: Dict, reason: str, now: Optional[datetime]) -> None:
    if provider == Provider.APPLE.value:
        if is_expired(token_data.get("expires_at"), now):
            raise AppError(
                "Apple Music authorization expired. Please re-authenticate.",
                "AUTH_EXPIRED",
                401,
            )
        return

    if provider != Provider.SPOTIFY.value:
        raise AppError("Unknown provider", "UNKNOWN_PROVIDER", 400)

    # Spotify 但 refresh_token 不合法 → reason 就是驗證失敗的 code
    raise AppError("Re-authentication required", reason, 401)
