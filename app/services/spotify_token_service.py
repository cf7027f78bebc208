# app/services/spotify_token_service.py
import base64
import logging
from typing import Dict, Optional

import requests

from app.config import settings
from app.services.token_refresh import RefreshResult

logger = logging.getLogger(__name__)

SPOTIFY_AUTH_URL = "https://accounts.spotify.com/authorize"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
SPOTIFY_USER_URL = "https://api.spotify.com/v1/me"

DEFAULT_EXPIRES_IN = 3600


def _basic_auth_header() -> str:
    raw = f"{settings.SPOTIFY_CLIENT_ID}:{settings.SPOTIFY_CLIENT_SECRET}"
    return "Basic " + base64.b64encode(raw.encode()).decode()


def _post_token_endpoint(payload: Dict, timeout: Optional[float] = None) -> Optional[Dict]:
    """
    打 Spotify token endpoint。
    - 成功 → 回傳 JSON dict
    - 失敗（timeout / 連線錯誤 / 非 2xx / JSON 壞掉 / expires_in 不是數字）→ None
    """
    headers = {
        "Content-Type": "application/x-www-form-urlencoded",
        "Authorization": _basic_auth_header(),
    }

    try:
        r = requests.post(
            SPOTIFY_TOKEN_URL,
            data=payload,
            headers=headers,
            timeout=timeout or settings.TOKEN_REFRESH_TIMEOUT_SECONDS,
        )
    except requests.exceptions.RequestException as e:
        logger.error(f"Spotify token endpoint unreachable ({payload.get('grant_type')}): {e}")
        return None

    if not r.ok:
        logger.error(f"Spotify token endpoint error {r.status_code}: {r.text}")
        return None

    try:
        data = r.json()
    except ValueError:
        logger.error(f"Spotify token endpoint returned non-JSON body: {r.text[:200]}")
        return None

    if not isinstance(data, dict) or "access_token" not in data:
        logger.error(f"Spotify token endpoint response missing access_token: {data}")
        return None

    try:
        data["expires_in"] = int(data.get("expires_in", DEFAULT_EXPIRES_IN))
    except (TypeError, ValueError):
        logger.error(f"Spotify token endpoint returned invalid expires_in: {data.get('expires_in')!r}")
        return None

    return data


def refresh_spotify_token(refresh_token: str, timeout: Optional[float] = None) -> RefreshResult:
    """
    用 refresh_token 換新的 access_token。
    不會自動 retry：被拒絕的 refresh_token 重複使用可能讓 Spotify 把它撤銷，
    失敗就交給上層決定（通常是重新登入）。
    """
    data = _post_token_endpoint(
        {"grant_type": "refresh_token", "refresh_token": refresh_token},
        timeout=timeout,
    )
    if data is None:
        return RefreshResult(success=False)

    return RefreshResult(
        success=True,
        access_token=data["access_token"],
        # Spotify 不一定會回新的 refresh_token
        refresh_token=data.get("refresh_token"),
        expires_in=data["expires_in"],
    )


def exchange_authorization_code(code: str, timeout: Optional[float] = None) -> Optional[Dict]:
    """OAuth callback：用 code 換 access_token / refresh_token"""
    return _post_token_endpoint(
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": settings.SPOTIFY_REDIRECT_URI,
        },
        timeout=timeout,
    )


def fetch_spotify_profile(access_token: str, timeout: Optional[float] = None) -> Optional[Dict]:
    headers = {"Authorization": f"Bearer {access_token}"}

    try:
        r = requests.get(
            SPOTIFY_USER_URL,
            headers=headers,
            timeout=timeout or settings.TOKEN_REFRESH_TIMEOUT_SECONDS,
        )
    except requests.exceptions.RequestException as e:
        logger.error(f"Spotify profile request failed: {e}")
        return None

    if r.status_code != 200:
        logger.error(f"Spotify profile error {r.status_code}: {r.text}")
        return None

    return r.json()
