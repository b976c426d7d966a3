from __future__ import annotations
import redis.asyncio as redis
from .config import get_settings

_settings = get_settings()
_r: redis.Redis | None = None


def redis_enabled() -> bool:
    return bool(_settings.redis_url)


def get_redis() -> redis.Redis:
    global _r
    if _r is None:
        _r = redis.from_url(_settings.redis_url, decode_responses=True)
    return _r


async def ping_redis() -> bool:
    try:
        pong = await get_redis().ping()
        return bool(pong)
    except Exception:
        return False


async def close_redis() -> None:
    global _r
    if _r is not None:
        await _r.aclose()
        _r = None


# ---- last known role per user (UX hint, not an authorization source) ----
class RedisRoleHintStore:
    def __init__(self, r: redis.Redis | None = None, prefix: str = "role:last"):
        self._r = r
        self.prefix = prefix

    @property
    def r(self) -> redis.Redis:
        return self._r or get_redis()

    async def remember(self, user_id: str, role: str) -> None:
        await self.r.set(f"{self.prefix}:{user_id}", role)

    async def recall(self, user_id: str) -> str | None:
        return await self.r.get(f"{self.prefix}:{user_id}")

    async def forget(self, user_id: str) -> None:
        await self.r.delete(f"{self.prefix}:{user_id}")


# ---- access gate redirect counter: fixed window per navigation key ----
class RedisRedirectCounter:
    def __init__(self, r: redis.Redis | None = None, ttl_seconds: int | None = None, prefix: str = "gate:redirects"):
        self._r = r
        self.ttl_seconds = ttl_seconds or _settings.redirect_counter_ttl_sec
        self.prefix = prefix

    @property
    def r(self) -> redis.Redis:
        return self._r or get_redis()

    async def get(self, key: str) -> int:
        v = await self.r.get(f"{self.prefix}:{key}")
        return int(v) if v else 0

    async def incr(self, key: str) -> int:
        # INCR, refresh expire so an abandoned loop eventually resets
        pipe = self.r.pipeline()
        pipe.incr(f"{self.prefix}:{key}")
        pipe.expire(f"{self.prefix}:{key}", self.ttl_seconds)
        count, _ = await pipe.execute()
        return int(count)

    async def reset(self, key: str) -> None:
        await self.r.delete(f"{self.prefix}:{key}")
