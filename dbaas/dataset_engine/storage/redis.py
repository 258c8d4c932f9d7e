"""
Key-value payload driver for the ``abase`` provider.

abase speaks the Redis protocol, so payloads are written with MSET and
read with MGET through redis.asyncio.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis

from ..config import RedisConfig
from ..entity import Item
from ..errors import InternalError
from .base import decode_payload, encode_payload

logger = logging.getLogger(__name__)


class RedisPayloadDriver:
    """Stores item payloads as plain string values."""

    def __init__(self, config: RedisConfig) -> None:
        self.config = config
        self._redis: aioredis.Redis | None = None

    async def connect(self) -> None:
        if self._redis is not None:
            return
        self._redis = aioredis.from_url(self.config.url)
        await self._redis.ping()
        logger.info("Payload KV connected")

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _r(self) -> aioredis.Redis:
        if self._redis is None:
            raise InternalError("payload KV not connected")
        return self._redis

    def _k(self, storage_key: str) -> str:
        return f"{self.config.key_prefix}payload:{storage_key}"

    async def mset_item_data(self, items: list[Item]) -> None:
        if not items:
            return
        await self._r().mset({self._k(i.data_properties.storage_key): encode_payload(i) for i in items})

    async def mget_item_data(self, items: list[Item]) -> None:
        if not items:
            return
        keys = [self._k(i.data_properties.storage_key) for i in items]
        raws = await self._r().mget(keys)
        for item, key, raw in zip(items, keys, raws):
            if raw is None:
                raise InternalError(f"item payload not found, key={key}")
            decode_payload(item, raw)
