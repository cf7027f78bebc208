# app/services/jwt_service.py
import time
from typing import Optional

import jwt

from app.config.settings import JWT_SECRET

JWT_ALGORITHM = "HS256"
EXPIRE_SECONDS = 3600 * 24 * 7       # 7 天


def create_session_token(user_id: str, provider: str) -> str:
    payload = {
        "user_id": user_id,
        "provider": provider,
        "exp": int(time.time()) + EXPIRE_SECONDS
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_session_token(token: str) -> Optional[str]:
    """解析 session token → user_id；過期或簽章不對回傳 None"""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        return None
    return payload.get("user_id")


def user_id_from_authorization(authorization: Optional[str]) -> Optional[str]:
    # Authorization: Bearer <JWT token>
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return decode_session_token(authorization.split(" ", 1)[1].strip())
