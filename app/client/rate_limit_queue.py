# app/client/rate_limit_queue.py
"""
Client 端的 429 處理：被 rate limit 的 request 先排隊，等 Retry-After 之後依序重送。

狀態：
    IDLE      沒被限制，queue 是空的
    LIMITED   等 Retry-After 中，新的 429 繼續排到後面
    DRAINING  依序重送（FIFO，一次一個，前一個結束才送下一個）

重送時又 429 → 回到 LIMITED，等完之後從同一個 request 繼續，不會重頭來。
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 30
DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_RETRY_WAIT = 3600

RequestFn = Callable[[], Awaitable[Any]]


class QueueState(str, Enum):
    IDLE = "idle"
    LIMITED = "limited"
    DRAINING = "draining"


class RequestCancelledError(Exception):
    def __init__(self, message: str = "Request cancelled"):
        super().__init__(message)


class RateLimitExceededError(Exception):
    """同一個 request 重送太多次還是 429"""

    def __init__(self, attempts: int, retry_after: int):
        super().__init__(f"Still rate limited after {attempts} retries")
        self.status = 429
        self.attempts = attempts
        self.retry_after = retry_after


@dataclass
class RateLimitState:
    is_limited: bool
    retry_after: int
    queued_requests: int
    state: QueueState


@dataclass(eq=False)
class _QueuedRequest:
    request: RequestFn
    future: asyncio.Future
    retries: int = 0


def parse_retry_after(value, default: int = DEFAULT_RETRY_AFTER) -> int:
    """Retry-After header（秒數）；沒帶或格式不對就用 default"""
    if value is None or value == "":
        return default
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return default
    return max(0, seconds)


def _rate_limited_retry_after(outcome, default: int) -> Optional[int]:
    """
    outcome 是 response 或 exception。
    429 → 回傳要等幾秒；不是 429 → None
    """
    if isinstance(outcome, BaseException):
        if getattr(outcome, "status", None) != 429:
            return None
        return parse_retry_after(getattr(outcome, "retry_after", None), default)

    if getattr(outcome, "status_code", None) != 429:
        return None
    headers = getattr(outcome, "headers", None) or {}
    return parse_retry_after(headers.get("Retry-After"), default)


class RateLimitQueue:

    def __init__(
        self,
        default_retry_after: int = DEFAULT_RETRY_AFTER,
        max_retries: int = DEFAULT_MAX_RETRIES,
        max_retry_wait: int = DEFAULT_MAX_RETRY_WAIT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.default_retry_after = default_retry_after
        self.max_retries = max_retries
        self.max_retry_wait = max_retry_wait
        self._sleep = sleep

        self.state = QueueState.IDLE
        self.retry_after = 0
        self._queue: Deque[_QueuedRequest] = deque()
        self._drain_task: Optional[asyncio.Task] = None

    # --------------------------
    # 狀態
    # --------------------------
    @property
    def is_limited(self) -> bool:
        return self.state == QueueState.LIMITED

    @property
    def queued_requests(self) -> int:
        return len(self._queue)

    def snapshot(self) -> RateLimitState:
        return RateLimitState(
            is_limited=self.is_limited,
            retry_after=self.retry_after,
            queued_requests=self.queued_requests,
            state=self.state,
        )

    # --------------------------
    # 包 request
    # --------------------------
    async def with_rate_limit_handling(self, request_fn: RequestFn):
        """
        執行 request_fn；遇到 429 就排隊，回傳的 awaitable 等到重送成功（或失敗）才結束。
        非 429 的錯誤照樣往外丟。
        """
        try:
            response = await request_fn()
        except Exception as e:
            retry_after = _rate_limited_retry_after(e, self.default_retry_after)
            if retry_after is None:
                raise
        else:
            retry_after = _rate_limited_retry_after(response, self.default_retry_after)
            if retry_after is None:
                return response

        return await self._enqueue(request_fn, retry_after)

    def _enqueue(self, request_fn: RequestFn, retry_after: int) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        entry = _QueuedRequest(request=request_fn, future=future)
        self._queue.append(entry)
        # caller 被 cancel → 直接從 queue 拿掉，不要再幫它重送
        future.add_done_callback(lambda f: self._discard(entry) if f.cancelled() else None)

        # 已經在等 / 在 drain 的話，排到後面就好，不重設 timer
        if self.state == QueueState.IDLE:
            self._enter_limited(retry_after)

        # 只會有一個 drain task
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())

        logger.info(f"Request rate limited, queued ({len(self._queue)} pending, retry in {self.retry_after}s)")
        return future

    def _enter_limited(self, retry_after: int) -> None:
        self.state = QueueState.LIMITED
        self.retry_after = min(retry_after, self.max_retry_wait)

    # --------------------------
    # Drain loop
    # --------------------------
    async def _drain(self) -> None:
        await self._sleep(self.retry_after)
        self.state = QueueState.DRAINING
        self.retry_after = 0

        while self._queue:
            entry = self._queue[0]
            if entry.future.done():
                # 沒人在等了
                self._queue.popleft()
                continue

            try:
                outcome = await entry.request()
            except Exception as e:
                outcome = e

            # request 跑的時候被 clear_queue() 或 cancel 拿掉了 → 結果丟掉
            if not self._is_head(entry):
                continue

            retry_after = _rate_limited_retry_after(outcome, self.default_retry_after)

            if retry_after is None:
                # 結束（成功或非 429 錯誤）→ 出隊
                self._queue.popleft()
                if entry.future.done():
                    continue
                if isinstance(outcome, BaseException):
                    entry.future.set_exception(outcome)
                else:
                    entry.future.set_result(outcome)
                continue

            entry.retries += 1
            if entry.retries >= self.max_retries:
                self._queue.popleft()
                if not entry.future.done():
                    entry.future.set_exception(RateLimitExceededError(entry.retries, retry_after))
                logger.warning(f"Giving up on queued request after {entry.retries} retries")
                continue

            # 又被 429：entry 留在隊頭，等完再從它開始
            self._enter_limited(retry_after)
            await self._sleep(self.retry_after)
            self.state = QueueState.DRAINING
            self.retry_after = 0

        self.state = QueueState.IDLE
        self.retry_after = 0

    def _is_head(self, entry: _QueuedRequest) -> bool:
        return bool(self._queue) and self._queue[0] is entry

    def _discard(self, entry: _QueuedRequest) -> None:
        try:
            self._queue.remove(entry)
        except ValueError:
            pass

    # --------------------------
    # 取消
    # --------------------------
    def clear_queue(self) -> int:
        """把還在排隊的 request 全部 reject（Request cancelled），狀態回到 IDLE"""
        cancelled = 0
        while self._queue:
            entry = self._queue.popleft()
            if not entry.future.done():
                entry.future.set_exception(RequestCancelledError())
                cancelled += 1

        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        self._drain_task = None

        self.state = QueueState.IDLE
        self.retry_after = 0
        return cancelled

    async def aclose(self) -> None:
        task = self._drain_task
        self.clear_queue()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
