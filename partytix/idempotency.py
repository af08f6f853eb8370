import json

from . import config


def _key(scope: str, idem_key: str) -> str:
    return f"idem:{scope}:{idem_key}"


async def get_cached_response(redis, scope: str, idem_key: str | None):
    if redis is None or not idem_key:
        return None
    raw = await redis.get(_key(scope, idem_key))
    return json.loads(raw) if raw else None


async def set_cached_response(redis, scope: str, idem_key: str | None, response: dict, ttl_seconds: int | None = None):
    if redis is None or not idem_key:
        return
    ttl_seconds = ttl_seconds or config.IDEMPOTENCY_TTL_SECONDS
    await redis.setex(_key(scope, idem_key), ttl_seconds, json.dumps(response, default=str))
