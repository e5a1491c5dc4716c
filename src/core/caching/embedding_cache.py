"""Content-hash cache for embeddings.

Embeddings are deterministic per (model, text), so they are cached in
Redis under a hash of the text. The cache is an optimisation only: any
Redis error is logged and treated as a miss.
"""

import hashlib
import json
import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class EmbeddingCache:
    """Redis-backed embedding cache keyed by `embedding:{model}:{sha256}`."""

    def __init__(self, redis: Redis, ttl: int = 7200):
        self.redis = redis
        self.ttl = ttl

    @staticmethod
    def cache_key(model: str, text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"embedding:{model}:{digest}"

    async def get_many(self, model: str, texts: list[str]) -> list[list[float] | None]:
        """Look up several texts at once; misses come back as None."""
        if not texts:
            return []
        keys = [self.cache_key(model, t) for t in texts]
        try:
            values = await self.redis.mget(keys)
        except RedisError as e:
            logger.warning(f"[EmbeddingCache] Read failed, treating as miss: {e}")
            return [None] * len(texts)
        return [json.loads(v) if v else None for v in values]

    async def set_many(self, model: str, items: list[tuple[str, list[float]]]) -> None:
        if not items:
            return
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                for text, vector in items:
                    pipe.setex(self.cache_key(model, text), self.ttl, json.dumps(vector))
                await pipe.execute()
        except RedisError as e:
            logger.warning(f"[EmbeddingCache] Write failed, skipping: {e}")

    async def close(self) -> None:
        await self.redis.aclose()
