# app/api/auth_api.py
import logging
from typing import Optional
from urllib.parse import quote, urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse

from app.config import settings
from app.models.auth_models import (
    AppleAuthResponse,
    AppleCallbackRequest,
    AppleCallbackResponse,
    LogoutResponse,
    RefreshResponse,
    SpotifyAuthResponse,
    UserIdRequest,
)
from app.models.error_models import AppError, ErrorResponse
from app.models.token_model import Provider, TokenRecord
from app.services import apple_music_service, spotify_token_service
from app.services.auth_repository import get_auth_repository
from app.services.jwt_service import create_session_token
from app.services.oauth_state_service import generate_state, get_state_store
from app.services.token_lifecycle import get_valid_access_token
from app.services.token_refresh import calculate_new_expiration, is_expired

router = APIRouter()

logger = logging.getLogger(__name__)

SPOTIFY_SCOPES = " ".join([
    "user-read-private",
    "user-read-email",
    "playlist-read-private",
    "playlist-read-collaborative",
    "playlist-modify-public",
    "playlist-modify-private",
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-read-currently-playing",
])


def _welcome_redirect(error: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/welcome?error={quote(error)}")


def _require_user_id(payload: Optional[UserIdRequest]) -> str:
    if payload is None or not payload.userId:
        raise AppError("User ID is required", "MISSING_USER_ID", 400)
    return payload.userId


# === Spotify OAuth ===
@router.post("/spotify", response_model=SpotifyAuthResponse)
def spotify_login(state_store=Depends(get_state_store)):
    """
    建立 Spotify 授權 URL，前端直接 redirect 過去。
    state 存起來，callback 時比對（10 分鐘內有效）。
    """
    state = generate_state()
    state_store.save_state(state, Provider.SPOTIFY.value)

    params = urlencode({
        "client_id": settings.SPOTIFY_CLIENT_ID,
        "response_type": "code",
        "redirect_uri": settings.SPOTIFY_REDIRECT_URI,
        "scope": SPOTIFY_SCOPES,
        "state": state,
        "show_dialog": "true",
    })

    return {"authUrl": f"{spotify_token_service.SPOTIFY_AUTH_URL}?{params}", "state": state}


@router.get("/callback")
def spotify_callback(
    code: Optional[str] = Query(None, description="Spotify 回傳的授權 code"),
    state: Optional[str] = Query(None, description="/spotify 產生的 state"),
    error: Optional[str] = Query(None, description="使用者拒絕授權時 Spotify 帶的 error"),
    state_store=Depends(get_state_store),
    repository=Depends(get_auth_repository),
):
    try:
        # 1. 使用者拒絕 / Spotify 回錯誤
        if error:
            logger.warning(f"OAuth error from Spotify: {error}")
            return _welcome_redirect(error)

        # 2. 驗證 state（用過就刪）
        state_data = state_store.pop_state(state) if state else None
        if not state_data:
            return _welcome_redirect("invalid_state")
        if state_data.get("provider") != Provider.SPOTIFY.value:
            return _welcome_redirect("provider_mismatch")

        # 3. code 換 token
        tokens = spotify_token_service.exchange_authorization_code(code)
        if not tokens:
            return _welcome_redirect("token_exchange_failed")

        # 4. 拿 Spotify profile
        profile = spotify_token_service.fetch_spotify_profile(tokens["access_token"])
        if not profile:
            return _welcome_redirect("user_fetch_failed")

        # 5. 建立 / 更新 user
        try:
            existing = repository.find_user_by_provider(Provider.SPOTIFY.value, profile["id"])
        except Exception as e:
            logger.error(f"User lookup error: {e}")
            return _welcome_redirect("database_error")

        if existing:
            user_id = existing["id"]
            repository.update_user(
                user_id,
                email=profile.get("email"),
                display_name=profile.get("display_name"),
            )
        else:
            try:
                user_id = repository.create_user(
                    Provider.SPOTIFY.value,
                    profile["id"],
                    email=profile.get("email"),
                    display_name=profile.get("display_name"),
                )
            except Exception as e:
                logger.error(f"User creation error: {e}")
                return _welcome_redirect("user_creation_failed")

        # 6. 存 token（upsert，一個 user 一筆）
        try:
            repository.upsert_token(TokenRecord(
                user_id=user_id,
                provider=Provider.SPOTIFY,
                access_token=tokens["access_token"],
                refresh_token=tokens.get("refresh_token"),
                expires_at=calculate_new_expiration(tokens["expires_in"]),
            ))
        except Exception as e:
            logger.error(f"Token storage error: {e}")
            return _welcome_redirect("token_storage_failed")

        # 7. 回前端，前端自己處理 session
        session_token = create_session_token(user_id, Provider.SPOTIFY.value)
        query = urlencode({"userId": user_id, "provider": "spotify", "token": session_token})
        return RedirectResponse(url=f"{settings.FRONTEND_URL}/now-playing?{query}")

    except Exception:
        logger.exception("Spotify callback error")
        return _welcome_redirect("callback_failed")


# === Apple Music ===
@router.post("/apple", response_model=AppleAuthResponse)
def apple_login(state_store=Depends(get_state_store)):
    """
    Apple Music 授權在前端用 MusicKit JS 做，後端只負責發 developer token。
    """
    try:
        developer_token = apple_music_service.generate_developer_token()
    except Exception as e:
        logger.error(f"Apple Music auth initiation error: {e}")
        raise AppError("Failed to initiate Apple Music authentication", "AUTH_INIT_FAILED", 500, True)

    state = generate_state()
    state_store.save_state(state, Provider.APPLE.value)
    return {"developerToken": developer_token, "state": state}


@router.post(
    "/apple/callback",
    response_model=AppleCallbackResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def apple_callback(
    payload: AppleCallbackRequest,
    state_store=Depends(get_state_store),
    repository=Depends(get_auth_repository),
):
    state_data = state_store.pop_state(payload.state) if payload.state else None
    if not state_data:
        raise AppError("Invalid state parameter", "INVALID_STATE", 400)
    if state_data.get("provider") != Provider.APPLE.value:
        raise AppError("Provider mismatch", "PROVIDER_MISMATCH", 400)
    if not payload.musicUserToken:
        raise AppError("Missing music user token", "MISSING_TOKEN", 400)

    provider_id = apple_music_service.apple_user_id(payload.musicUserToken)

    try:
        existing = repository.find_user_by_provider(Provider.APPLE.value, provider_id)
    except Exception as e:
        logger.error(f"User lookup error: {e}")
        raise AppError("Database error", "DATABASE_ERROR", 500, True)

    if existing:
        user_id = existing["id"]
        repository.update_user(user_id)
    else:
        try:
            user_id = repository.create_user(
                Provider.APPLE.value, provider_id, display_name="Apple Music User"
            )
        except Exception as e:
            logger.error(f"User creation error: {e}")
            raise AppError("Failed to create user", "USER_CREATION_FAILED", 500, True)

    # Apple Music 沒有 refresh token，直接給長效期限
    try:
        repository.upsert_token(TokenRecord(
            user_id=user_id,
            provider=Provider.APPLE,
            access_token=payload.musicUserToken,
            refresh_token="",
            expires_at=calculate_new_expiration(apple_music_service.MUSIC_USER_TOKEN_TTL_SECONDS),
        ))
    except Exception as e:
        logger.error(f"Token storage error: {e}")
        raise AppError("Failed to store token", "TOKEN_STORAGE_FAILED", 500, True)

    return {
        "userId": user_id,
        "provider": Provider.APPLE.value,
        "message": "Authentication successful",
        "token": create_session_token(user_id, Provider.APPLE.value),
    }


# === Token refresh ===
@router.post(
    "/refresh",
    response_model=RefreshResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse},
               404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def refresh(payload: Optional[UserIdRequest] = None, repository=Depends(get_auth_repository)):
    """
    回傳可用的 access token；快過期（5 分鐘內）會先跟 Spotify refresh。
    """
    user_id = _require_user_id(payload)

    try:
        return get_valid_access_token(user_id, repository)
    except AppError:
        raise
    except Exception as e:
        logger.exception(f"Token refresh error for user {user_id}: {e}")
        raise AppError("Failed to refresh token", "REFRESH_ERROR", 500, True)


# === Logout ===
@router.post("/logout", response_model=LogoutResponse)
def logout(payload: Optional[UserIdRequest] = None, repository=Depends(get_auth_repository)):
    user_id = _require_user_id(payload)

    try:
        repository.delete_token(user_id)
    except Exception as e:
        logger.error(f"Token deletion error: {e}")
        raise AppError("Failed to clear authentication data", "LOGOUT_FAILED", 500, True)

    return {"message": "Logged out successfully", "success": True}


# === Status ===
@router.get("/status/{user_id}")
def auth_status(user_id: str, repository=Depends(get_auth_repository)):
    try:
        user = repository.get_user(user_id)
        if not user:
            return JSONResponse(status_code=404, content={
                "authenticated": False,
                "error": {"message": "User not found", "code": "USER_NOT_FOUND"},
            })

        user_info = {
            "id": user["id"],
            "provider": user.get("provider"),
            "displayName": user.get("display_name"),
        }

        token_data = repository.get_token(user_id)
        if not token_data:
            return {"authenticated": False, "user": user_info}

        expired = is_expired(token_data.get("expires_at"))
        user_info["email"] = user.get("email")

        return {
            "authenticated": not expired,
            "user": user_info,
            "tokenExpired": expired,
            "expiresAt": token_data.get("expires_at"),
        }

    except Exception as e:
        logger.error(f"Auth status error: {e}")
        return JSONResponse(status_code=500, content={
            "authenticated": False,
            "error": {"message": "Failed to check authentication status", "code": "STATUS_CHECK_FAILED"},
        })
