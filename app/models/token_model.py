# app/models/token_model.py
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Provider(str, Enum):
    SPOTIFY = "spotify"
    APPLE = "apple"


class TokenRecord(BaseModel):
    """auth_tokens/{user_id}：每個 user 只會有一筆（upsert）"""
    user_id: str
    provider: Provider = Provider.SPOTIFY
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: str             # ISO-8601 UTC，例如 2024-01-01T01:00:00.000Z
    updated_at: Optional[str] = None
