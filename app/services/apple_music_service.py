# app/services/apple_music_service.py
import hashlib
import time

import jwt

from app.config import settings

DEVELOPER_TOKEN_TTL_SECONDS = 180 * 24 * 60 * 60     # MusicKit token 最長 180 天
MUSIC_USER_TOKEN_TTL_SECONDS = 180 * 24 * 60 * 60


class AppleMusicConfigError(RuntimeError):
    pass


def generate_developer_token(now: int = None) -> str:
    """
    MusicKit developer token：用 Apple 給的 .p8 private key 簽 ES256 JWT。
    前端拿這個 token 初始化 MusicKit JS，授權在前端完成。
    """
    key_id = settings.APPLE_MUSIC_KEY_ID
    team_id = settings.APPLE_MUSIC_TEAM_ID
    private_key = settings.APPLE_MUSIC_PRIVATE_KEY

    if not key_id or not team_id or not private_key:
        raise AppleMusicConfigError("Missing Apple Music configuration")

    # .env 裡常常把換行存成 \n
    private_key = private_key.replace("\\n", "\n")

    now = int(now if now is not None else time.time())
    payload = {
        "iss": team_id,
        "iat": now,
        "exp": now + DEVELOPER_TOKEN_TTL_SECONDS,
    }
    return jwt.encode(payload, private_key, algorithm="ES256", headers={"kid": key_id})


def apple_user_id(music_user_token: str) -> str:
    # Apple Music 不會給 user id，用 token hash 當 provider_id
    return hashlib.sha256(music_user_token.encode()).hexdigest()[:32]
