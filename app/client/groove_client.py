# app/client/groove_client.py
"""
Groove backend 的 async client（給前端 / 其他服務用）。
所有 request 都經過 RateLimitQueue：429 會自動排隊，等 Retry-After 後重送。
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import httpx

from app.client.rate_limit_queue import (
    RateLimitExceededError,
    RateLimitQueue,
    RequestCancelledError,
    parse_retry_after,
)
from app.services.token_refresh import DEFAULT_REFRESH_BUFFER, Timestamp, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3001"


class ApiError(Exception):
    def __init__(self, message: str, status: int, retry_after: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.status = status
        self.retry_after = retry_after
        self.retryable = retryable


@dataclass
class AccessToken:
    access_token: str
    expires_at: str
    refreshed: bool


def parse_error_response(response: httpx.Response) -> ApiError:
    message = "An error occurred"
    retryable = False
    retry_after = None

    try:
        error = response.json().get("error") or {}
        message = error.get("message") or message
        retryable = bool(error.get("retryable", False))
        retry_after = error.get("retryAfter")
    except (ValueError, AttributeError):
        # 不是 JSON → 用 status text
        message = response.reason_phrase or message

    if response.status_code == 429:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        retryable = True

    return ApiError(message, response.status_code, retry_after, retryable)


def is_rate_limit_error(error: BaseException) -> bool:
    return getattr(error, "status", None) == 429 or "429" in str(error)


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, ApiError):
        return error.retryable
    # 連線類錯誤通常可以重試
    return isinstance(error, httpx.TransportError)


def seconds_until_refresh(
    expires_at: Timestamp,
    now: Optional[datetime] = None,
    buffer: timedelta = DEFAULT_REFRESH_BUFFER,
) -> Optional[float]:
    """
    下一次主動拿 token 要等幾秒（過期前 buffer 就去拿）。
    已經在 buffer 內 → None，應該馬上拿。
    """
    now = now or datetime.now(timezone.utc)
    delay = (parse_timestamp(expires_at) - parse_timestamp(now) - buffer).total_seconds()
    return delay if delay > 0 else None


class GrooveClient:

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        queue: Optional[RateLimitQueue] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.queue = queue or RateLimitQueue()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._sleep = sleep

        # user_id → 最新拿到的 token（keep_token_fresh 會更新）
        self.tokens: Dict[str, AccessToken] = {}
        self._keepers: Set[asyncio.Task] = set()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self) -> None:
        keepers = list(self._keepers)
        for task in keepers:
            task.cancel()
        if keepers:
            await asyncio.gather(*keepers, return_exceptions=True)

        await self.queue.aclose()
        if self._owns_client:
            await self._http.aclose()

    # --------------------------
    # 基本 request
    # --------------------------
    async def api_request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        async def send():
            return await self._http.request(method, endpoint, **kwargs)

        return await self.queue.with_rate_limit_handling(send)

    async def api_json(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        response = await self.api_request(method, endpoint, **kwargs)
        if not response.is_success:
            raise parse_error_response(response)
        return response.json()

    # --------------------------
    # Auth
    # --------------------------
    async def fetch_access_token(self, user_id: str) -> AccessToken:
        data = await self.api_json("POST", "/api/auth/refresh", json={"userId": user_id})
        return AccessToken(
            access_token=data["accessToken"],
            expires_at=data["expiresAt"],
            refreshed=data.get("refreshed", False),
        )

    async def logout(self, user_id: str) -> bool:
        data = await self.api_json("POST", "/api/auth/logout", json={"userId": user_id})
        return bool(data.get("success"))

    async def auth_status(self, user_id: str) -> Dict[str, Any]:
        response = await self.api_request("GET", f"/api/auth/status/{user_id}")
        # 404 也有 body（authenticated: false）
        if response.status_code not in (200, 404):
            raise parse_error_response(response)
        return response.json()

    # --------------------------
    # 自動 refresh
    # --------------------------
    def keep_token_fresh(
        self,
        user_id: str,
        on_token: Optional[Callable[[AccessToken], None]] = None,
        buffer: timedelta = DEFAULT_REFRESH_BUFFER,
    ) -> asyncio.Task:
        """
        背景 task：先拿一次 token，之後每次在過期前 buffer 再拿一次。
        要馬上換的話直接呼叫 fetch_access_token；aclose() 會把 task 停掉。
        """
        task = asyncio.create_task(self._keep_token_fresh(user_id, on_token, buffer))
        self._keepers.add(task)
        task.add_done_callback(self._keepers.discard)
        return task

    async def _keep_token_fresh(self, user_id, on_token, buffer) -> None:
        while True:
            try:
                token = await self.fetch_access_token(user_id)
            except (ApiError, httpx.HTTPError, RateLimitExceededError, RequestCancelledError) as e:
                # 拿不到就停，不自己重試（通常要重新登入）
                logger.warning(f"Stopped refreshing token for {user_id}: {e}")
                return

            self.tokens[user_id] = token
            if on_token is not None:
                on_token(token)

            delay = seconds_until_refresh(token.expires_at, buffer=buffer)
            if delay is None:
                # 拿到的 token 已經在 buffer 內，排不了下一次
                return
            await self._sleep(delay)
