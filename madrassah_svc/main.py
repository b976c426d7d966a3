from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .db import init_db
from .core.config import get_settings
from .core.nats import NatsChangeFeed, nats_close, nats_connect
from .core.redis import RedisRedirectCounter, RedisRoleHintStore, close_redis, ping_redis, redis_enabled
from .routers import activity, attendance, auth, gate, leaderboard, messages, students, users
from .services.context import AppContext

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def _change_feed():
    if not settings.enable_nats:
        return None
    try:
        await nats_connect()
    except Exception as e:
        logger.warning("NATS unavailable (%s); using in-process change feed", e)
        return None
    return NatsChangeFeed()


async def _stores():
    if not redis_enabled():
        return None, None
    if not await ping_redis():
        logger.warning("Redis at %s unreachable; using in-memory role hints and redirect counters", settings.redis_url)
        return None, None
    return RedisRoleHintStore(), RedisRedirectCounter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()

    hints, redirects = await _stores()
    ctx = AppContext.build(settings, feed=await _change_feed(), hints=hints, redirects=redirects)
    app.state.ctx = ctx
    # the service's own views are keyed per madrassah/user, so one service-wide binding
    await ctx.bridge.bind(settings.service_name)

    # polling fallback: age cached views out while the change feed is down
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        ctx.refresh_stale_views, "interval", seconds=settings.cache_sweep_interval_sec, id="cache-sweep",
        max_instances=1, coalesce=True,
    )
    scheduler.start()
    logger.info("%s started (feed=%s)", settings.service_name, type(ctx.feed).__name__)

    yield

    try:
        scheduler.shutdown(wait=False)
    except Exception:
        logger.warning("scheduler shutdown failed", exc_info=True)
    await ctx.bridge.unbind()
    await nats_close()
    await close_redis()


app = FastAPI(title="madrassah-svc", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# routers
app.include_router(auth.router)
app.include_router(users.router)
app.include_router(gate.router)
app.include_router(students.router)
app.include_router(activity.router)
app.include_router(leaderboard.router)
app.include_router(messages.router)
app.include_router(attendance.router)


@app.get("/health")
async def health():
    ctx: AppContext | None = getattr(app.state, "ctx", None)
    return {
        "status": "ok",
        "service": settings.service_name,
        "change_feed": "connected" if ctx and ctx.feed.is_connected else "disconnected",
        "cached_views": len(ctx.cache) if ctx else 0,
    }

Instrumentator().instrument(app).expose(app)
