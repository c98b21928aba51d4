import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from greenbook.cache import cache
from greenbook.config import settings
from greenbook.database import async_session
from greenbook.middleware import TimingMiddleware
from greenbook.routers import articles, auth, follows, interactions, metrics, users
from greenbook.services.background import BackgroundDispatcher
from greenbook.services.toggle_service import ToggleCoordinator

logger = logging.getLogger("greenbook")


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await cache.connect()
    dispatcher = BackgroundDispatcher(max_concurrency=settings.TOGGLE_MAX_CONCURRENT_JOBS)
    app.state.toggle_coordinator = ToggleCoordinator(
        fast_store=cache,
        session_factory=async_session,
        dispatcher=dispatcher,
        flag_ttl=settings.TOGGLE_FLAG_TTL,
    )
    yield
    # Let queued toggle writes land before the pools close.
    if not await dispatcher.drain(timeout=settings.TOGGLE_DRAIN_TIMEOUT):
        logger.error("Shutting down with %d toggle write(s) unpersisted", dispatcher.pending)
    await cache.disconnect()


app = FastAPI(
    title="Greenbook API",
    description="Social blogging backend with Redis-gated likes, favorites and comment likes",
    version="1.0.0",
    lifespan=lifespan,
)

# Middleware
app.add_middleware(TimingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(auth.router)
app.include_router(users.router)
app.include_router(follows.router)
app.include_router(articles.router)
app.include_router(interactions.router)
app.include_router(metrics.router)


@app.get("/health")
async def health():
    # Without Redis the API still serves reads, but every toggle fails.
    redis_up = await cache.ping()
    return {
        "status": "healthy" if redis_up else "degraded",
        "redis": "up" if redis_up else "unavailable",
        "version": "1.0.0",
    }
