# app/middleware/rate_limit.py
"""
/api/* 的 rate limit（fixed window，預設每個 key 60 秒 100 次）。

key 的順序：session JWT 的 user → body.userId → query.userId → IP → "unknown"
每個 response 都會帶 X-RateLimit-Limit / X-RateLimit-Remaining；
超過的話直接回 429 + Retry-After，不會進到 route。
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from starlette.datastructures import Headers, MutableHeaders, QueryParams
from starlette.responses import JSONResponse

from app.config import settings
from app.services.error_log_service import log_rate_limit_event
from app.services.jwt_service import user_id_from_authorization
from app.services.rate_limit_store import InMemoryRateLimitStore, seconds_until

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    limited: bool
    remaining: int
    retry_after: Optional[int] = None


def resolve_rate_limit_key(scope, body: Optional[dict] = None) -> str:
    headers = Headers(scope=scope)

    user_id = user_id_from_authorization(headers.get("authorization"))
    if not user_id and isinstance(body, dict):
        user_id = body.get("userId")
    if not user_id:
        user_id = QueryParams(scope.get("query_string", b"")).get("userId")
    if user_id:
        return f"user:{user_id}"

    forwarded = headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else None
    if not ip and scope.get("client"):
        ip = scope["client"][0]
    return f"ip:{ip or 'unknown'}"


async def check_rate_limit(store, key: str, now: float, max_requests: int,
                           window_seconds: float) -> RateLimitResult:
    counter = await store.hit(key, now, window_seconds)

    if counter.count > max_requests:
        return RateLimitResult(
            limited=True,
            remaining=0,
            retry_after=seconds_until(counter.reset_at, now),
        )

    return RateLimitResult(limited=False, remaining=max_requests - counter.count)


async def _buffer_body(receive):
    """
    先把 body 讀完（要拿 userId），再包一個 receive 讓 route 還能讀到同一份 body。
    """
    chunks = []
    more_body = True
    while more_body:
        message = await receive()
        if message["type"] != "http.request":
            break
        chunks.append(message.get("body", b""))
        more_body = message.get("more_body", False)

    body = b"".join(chunks)
    replayed = False

    async def replay():
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return body, replay


def _parse_json_body(raw: bytes) -> Optional[dict]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class RateLimitMiddleware:

    def __init__(
        self,
        app,
        store=None,
        max_requests: int = None,
        window_seconds: float = None,
        retry_after_seconds: int = None,
        path_prefix: str = "/api",
        clock: Callable[[], float] = time.time,
        on_limited: Optional[Callable[[str, str], object]] = log_rate_limit_event,
    ):
        self.app = app
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.max_requests = max_requests if max_requests is not None else settings.RATE_LIMIT_MAX_REQUESTS
        self.window_seconds = window_seconds if window_seconds is not None else settings.RATE_LIMIT_WINDOW_SECONDS
        self.retry_after_seconds = (
            retry_after_seconds if retry_after_seconds is not None else settings.RATE_LIMIT_RETRY_AFTER_SECONDS
        )
        self.path_prefix = path_prefix
        self.clock = clock
        self.on_limited = on_limited

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or not scope["path"].startswith(self.path_prefix):
            await self.app(scope, receive, send)
            return

        body = None
        headers = Headers(scope=scope)
        if headers.get("content-type", "").startswith("application/json"):
            raw, receive = await _buffer_body(receive)
            body = _parse_json_body(raw)

        key = resolve_rate_limit_key(scope, body)
        result = await check_rate_limit(
            self.store, key, self.clock(), self.max_requests, self.window_seconds
        )

        rate_headers = {
            "X-RateLimit-Limit": str(self.max_requests),
            "X-RateLimit-Remaining": str(result.remaining),
        }

        if result.limited:
            retry_after = result.retry_after or self.retry_after_seconds
            rate_headers["Retry-After"] = str(retry_after)
            logger.warning(f"Rate limit exceeded for {key} on {scope['path']}")
            self._emit_limited(key, scope["path"])

            response = JSONResponse(
                status_code=429,
                headers=rate_headers,
                content={
                    "error": {
                        "message": "Too many requests. Please wait before trying again.",
                        "code": "RATE_LIMITED",
                        "retryable": True,
                        "retryAfter": retry_after,
                    }
                },
            )
            await response(scope, receive, send)
            return

        async def send_with_rate_headers(message):
            if message["type"] == "http.response.start":
                response_headers = MutableHeaders(scope=message)
                for name, value in rate_headers.items():
                    response_headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_rate_headers)

    def _emit_limited(self, key: str, path: str) -> None:
        if self.on_limited is None:
            return
        # 寫 log 是 blocking I/O，丟到 thread 跑，不等結果
        loop = asyncio.get_running_loop()
        loop.run_in_executor(None, self._log_safely, key, path)

    def _log_safely(self, key: str, path: str) -> None:
        try:
            self.on_limited(key, path)
        except Exception as e:
            logger.error(f"Failed to log rate limit event: {e}")


async def sweep_expired_windows(store, interval_seconds: float = None,
                                clock: Callable[[], float] = time.time) -> None:
    """背景 task：每 interval 秒清一次過期的 window（in-memory store 才需要）"""
    if interval_seconds is None:
        interval_seconds = settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await store.sweep(clock())
            if removed:
                logger.debug(f"Swept {removed} expired rate limit windows")
        except Exception as e:
            logger.error(f"Rate limit sweep failed: {e}")
