import os
from dotenv import load_dotenv

def load_env():
    if os.getenv("ENVIRONMENT") == "production":
        return

    base_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    env_path = os.path.join(base_dir, ".env")

    if os.path.exists(env_path):
        load_dotenv(env_path)

# Load env now
load_env()

# Spotify
SPOTIFY_CLIENT_ID = os.getenv("SPOTIFY_CLIENT_ID")
SPOTIFY_CLIENT_SECRET = os.getenv("SPOTIFY_CLIENT_SECRET")
SPOTIFY_REDIRECT_URI = os.getenv("SPOTIFY_REDIRECT_URI")

# Frontend（OAuth 完成後 redirect 回去）
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Apple Music（MusicKit developer token）
APPLE_MUSIC_KEY_ID = os.getenv("APPLE_MUSIC_KEY_ID")
APPLE_MUSIC_TEAM_ID = os.getenv("APPLE_MUSIC_TEAM_ID")
APPLE_MUSIC_PRIVATE_KEY = os.getenv("APPLE_MUSIC_PRIVATE_KEY")

# JWT（Groove session token）
JWT_SECRET = os.getenv("JWT_SECRET", "PLEASE_SET_SECRET")

# Redis
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")

# Rate limit（fixed window）
RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory")   # memory | redis
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
RATE_LIMIT_RETRY_AFTER_SECONDS = int(os.getenv("RATE_LIMIT_RETRY_AFTER_SECONDS", "30"))
RATE_LIMIT_SWEEP_INTERVAL_SECONDS = int(os.getenv("RATE_LIMIT_SWEEP_INTERVAL_SECONDS", "60"))

# Token refresh
TOKEN_REFRESH_BUFFER_SECONDS = int(os.getenv("TOKEN_REFRESH_BUFFER_SECONDS", "300"))
TOKEN_REFRESH_TIMEOUT_SECONDS = float(os.getenv("TOKEN_REFRESH_TIMEOUT_SECONDS", "10"))

# OAuth state（state 有效 10 分鐘）
OAUTH_STATE_TTL_SECONDS = int(os.getenv("OAUTH_STATE_TTL_SECONDS", "600"))
OAUTH_STATE_BACKEND = os.getenv("OAUTH_STATE_BACKEND", "memory")   # memory | firestore

# GCP Credentials (base64)
GOOGLE_CLOUD_CREDENTIALS = os.getenv("GOOGLE_CLOUD_CREDENTIALS")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
