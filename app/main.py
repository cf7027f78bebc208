# app/main.py
import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# === Import Routers ===
from app.api.auth_api import router as auth_router
from app.api.error_handlers import register_exception_handlers
from app.config import settings
from app.middleware.rate_limit import RateLimitMiddleware, sweep_expired_windows
from app.services.error_log_service import log_rate_limit_event
from app.services.rate_limit_store import create_rate_limit_store

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(rate_limit_store=None, rate_limit_event_logger=log_rate_limit_event, clock=time.time) -> FastAPI:
    store = rate_limit_store if rate_limit_store is not None else create_rate_limit_store()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # 定期清掉過期的 rate limit window
        sweeper = asyncio.create_task(sweep_expired_windows(store, clock=clock))
        logger.info("Groove backend started")
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            await store.close()

    app = FastAPI(
        title="Groove Backend",
        description=(
            "Backend for: "
            "• Spotify / Apple Music OAuth "
            "• Access token refresh "
            "• Per-user rate limiting"
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.rate_limit_store = store

    # === Rate limit（/api/*）===
    app.add_middleware(
        RateLimitMiddleware,
        store=store,
        clock=clock,
        on_limited=rate_limit_event_logger,
    )

    # === CORS Middleware（最外層，429 也要帶 CORS header）===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    )

    register_exception_handlers(app)

    # === Auth（OAuth / refresh / logout）===
    app.include_router(auth_router, prefix="/api/auth", tags=["Auth"])

    @app.get("/health")
    def health():
        return {"status": "ok", "message": "Groove backend is running"}

    return app


app = create_app()
