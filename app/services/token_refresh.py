# app/services/token_refresh.py
"""
Token refresh 的判斷邏輯（pure functions）。

流程拆成三段：
1. determine_refresh_action：要不要 refresh / 要不要重新登入
2. spotify_token_service.refresh_spotify_token：真正打 Spotify token endpoint
3. process_refresh_result：把結果合併成要寫回 DB 的 token

除了第 2 步以外都不碰網路，也不讀時鐘（now 可以從外面傳進來），方便測試。
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

REFRESHABLE_PROVIDER = "spotify"
DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)

Timestamp = Union[datetime, str, int, float]


class RefreshAction(str, Enum):
    NONE = "none"
    REFRESH = "refresh"
    REAUTH = "reauth"


@dataclass(frozen=True)
class RefreshDecision:
    action: RefreshAction
    reason: str


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class RefreshResult:
    """Token endpoint 回傳的結果，refresh_token 可能是 None（Spotify 不一定會給新的）"""
    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


@dataclass(frozen=True)
class RefreshError:
    message: str
    code: str
    retryable: bool = False


@dataclass(frozen=True)
class ProcessedRefresh:
    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[str] = None
    refreshed: bool = False
    error: Optional[RefreshError] = None


# --------- 小工具 ---------
def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Timestamp) -> datetime:
    """
    把 DB 裡的 expires_at 轉成 aware datetime。
    支援 ISO 字串（含 "Z"）、datetime、Unix timestamp（秒）。
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    ts = str(value)
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    parsed = datetime.fromisoformat(ts)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601，毫秒精度，結尾固定是 Z"""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _as_buffer(buffer: Union[timedelta, int, float]) -> timedelta:
    if isinstance(buffer, timedelta):
        return buffer
    return timedelta(seconds=buffer)


# --------- 判斷 ---------
def needs_refresh(
    expires_at: Timestamp,
    buffer: Union[timedelta, int, float] = DEFAULT_REFRESH_BUFFER,
    now: Optional[datetime] = None,
) -> bool:
    # 剛好等於 now + buffer 也算要 refresh
    now = now or _now_utc()
    if expires_at is None:
        return True
    try:
        expiration = parse_timestamp(expires_at)
    except (TypeError, ValueError):
        # expires_at 壞掉 → 當作過期處理
        return True
    return expiration <= parse_timestamp(now) + _as_buffer(buffer)


def is_expired(expires_at: Timestamp, now: Optional[datetime] = None) -> bool:
    now = now or _now_utc()
    if expires_at is None:
        return True
    try:
        return parse_timestamp(now) > parse_timestamp(expires_at)
    except (TypeError, ValueError):
        return True


def calculate_new_expiration(expires_in: Union[int, float], now: Optional[datetime] = None) -> str:
    now = now or _now_utc()
    return format_timestamp(parse_timestamp(now) + timedelta(seconds=expires_in))


def validate_refresh_token(refresh_token: Any) -> ValidationResult:
    if refresh_token is None:
        return ValidationResult(valid=False, error="MISSING_REFRESH_TOKEN")
    if not isinstance(refresh_token, str):
        return ValidationResult(valid=False, error="INVALID_REFRESH_TOKEN_TYPE")
    if not refresh_token.strip():
        return ValidationResult(valid=False, error="EMPTY_REFRESH_TOKEN")
    return ValidationResult(valid=True)


def determine_refresh_action(
    provider: str,
    token_data: Dict[str, Any],
    buffer: Union[timedelta, int, float] = DEFAULT_REFRESH_BUFFER,
    now: Optional[datetime] = None,
) -> RefreshDecision:
    """
    根據 token 狀態決定下一步：

    - none：token 還在有效期（超過 buffer）
    - reauth：不是 Spotify，或 refresh_token 不合法 → 只能重新走 OAuth
    - refresh：可以拿 refresh_token 去換新的 access_token
    """
    if not needs_refresh(token_data.get("expires_at"), buffer, now):
        return RefreshDecision(RefreshAction.NONE, "Token still valid")

    if provider != REFRESHABLE_PROVIDER:
        return RefreshDecision(RefreshAction.REAUTH, "Non-refreshable provider")

    validation = validate_refresh_token(token_data.get("refresh_token"))
    if not validation.valid:
        return RefreshDecision(RefreshAction.REAUTH, validation.error)

    return RefreshDecision(RefreshAction.REFRESH, "Token needs refresh")


# --------- 合併結果 ---------
def process_refresh_result(
    token_data: Dict[str, Any],
    refresh_result: Optional[RefreshResult],
    provider: str,
    now: Optional[datetime] = None,
) -> ProcessedRefresh:
    if provider != REFRESHABLE_PROVIDER:
        return ProcessedRefresh(
            success=False,
            error=RefreshError("Unknown provider", "UNKNOWN_PROVIDER"),
        )

    if not refresh_result or not refresh_result.success:
        return ProcessedRefresh(
            success=False,
            error=RefreshError("Token refresh failed", "REFRESH_FAILED"),
        )

    # Spotify 有時不會回 refresh token，要沿用舊的
    return ProcessedRefresh(
        success=True,
        access_token=refresh_result.access_token,
        refresh_token=refresh_result.refresh_token or token_data.get("refresh_token"),
        expires_at=calculate_new_expiration(refresh_result.expires_in, now),
        refreshed=True,
    )
