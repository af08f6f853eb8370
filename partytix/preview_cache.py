"""Short-lived preview codes. The in-memory cache is per process; set REDIS_URL to share."""
import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from . import config

logger = logging.getLogger(__name__)


@dataclass
class PreviewEntry:
    party_id: int
    price_id: int
    created_at: float

    def expired(self, ttl_seconds: int, now: float) -> bool:
        return now - self.created_at > ttl_seconds


class PreviewCache:
    async def get(self, code: str) -> Optional[PreviewEntry]:
        raise NotImplementedError

    async def put(self, code: str, party_id: int, price_id: int) -> PreviewEntry:
        raise NotImplementedError

    async def delete(self, code: str) -> None:
        raise NotImplementedError

    async def contains(self, code: str) -> bool:
        return (await self.get(code)) is not None


class InMemoryPreviewCache(PreviewCache):
    def __init__(self, ttl_seconds: int | None = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.PREVIEW_TTL_SECONDS
        self.clock = clock
        self._entries: dict[str, PreviewEntry] = {}

    async def get(self, code: str) -> Optional[PreviewEntry]:
        entry = self._entries.get(code)
        if entry is None:
            return None
        if entry.expired(self.ttl_seconds, self.clock()):
            logger.info("preview code expired code=%s", code)
            self._entries.pop(code, None)
            return None
        return entry

    async def put(self, code: str, party_id: int, price_id: int) -> PreviewEntry:
        now = self.clock()
        self._sweep(now)
        entry = PreviewEntry(party_id=int(party_id), price_id=int(price_id), created_at=now)
        self._entries[code] = entry
        return entry

    async def delete(self, code: str) -> None:
        self._entries.pop(code, None)

    def _sweep(self, now: float) -> None:
        stale = [c for c, e in self._entries.items() if e.expired(self.ttl_seconds, now)]
        for c in stale:
            del self._entries[c]
        if stale:
            logger.info("preview codes expired count=%d", len(stale))

    def __len__(self) -> int:
        return len(self._entries)


def _key(code: str) -> str:
    return f"preview:{code}"


class RedisPreviewCache(PreviewCache):
    """Shared across instances; Redis drops the key when the TTL runs out."""

    def __init__(self, redis, ttl_seconds: int | None = None, clock: Callable[[], float] = time.time):
        self.redis = redis
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.PREVIEW_TTL_SECONDS
        self.clock = clock

    async def get(self, code: str) -> Optional[PreviewEntry]:
        raw = await self.redis.get(_key(code))
        if not raw:
            return None
        entry = PreviewEntry(**json.loads(raw))
        if entry.expired(self.ttl_seconds, self.clock()):
            await self.redis.delete(_key(code))
            return None
        return entry

    async def put(self, code: str, party_id: int, price_id: int) -> PreviewEntry:
        entry = PreviewEntry(party_id=int(party_id), price_id=int(price_id), created_at=self.clock())
        await self.redis.setex(_key(code), self.ttl_seconds, json.dumps(asdict(entry)))
        return entry

    async def delete(self, code: str) -> None:
        await self.redis.delete(_key(code))

    async def contains(self, code: str) -> bool:
        return bool(await self.redis.exists(_key(code)))


def make_preview_cache(redis=None) -> PreviewCache:
    if redis is not None:
        return RedisPreviewCache(redis)
    return InMemoryPreviewCache()
