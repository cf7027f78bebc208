# app/models/auth_models.py
from pydantic import BaseModel
from typing import Optional


# POST /api/auth/spotify
class SpotifyAuthResponse(BaseModel):
    authUrl: str
    state: str


# POST /api/auth/apple
class AppleAuthResponse(BaseModel):
    developerToken: str
    state: str


class AppleCallbackRequest(BaseModel):
    musicUserToken: Optional[str] = None
    state: Optional[str] = None


class AppleCallbackResponse(BaseModel):
    userId: str
    provider: str
    message: str
    token: str          # Groove session JWT


# /refresh 跟 /logout 共用，userId 沒帶要回 MISSING_USER_ID 而不是 422
class UserIdRequest(BaseModel):
    userId: Optional[str] = None


class RefreshResponse(BaseModel):
    accessToken: str
    expiresAt: str
    refreshed: bool


class LogoutResponse(BaseModel):
    message: str
    success: bool
