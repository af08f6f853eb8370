from redis.asyncio import Redis

from . import config
from .preview_cache import PreviewCache, make_preview_cache
from .storage import BlobStore, make_blob_store

# Shared across requests; Redis only when configured
redis = Redis.from_url(config.REDIS_URL, decode_responses=True) if config.REDIS_URL else None
preview_cache = make_preview_cache(redis)
blob_store = make_blob_store()


def get_redis():
    return redis


def get_preview_cache() -> PreviewCache:
    return preview_cache


def get_blob_store() -> BlobStore | None:
    return blob_store
