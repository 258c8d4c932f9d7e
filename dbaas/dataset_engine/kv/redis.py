"""
Redis-backed KV store.

Key layout (all under RedisConfig.key_prefix):
    dataset:{id}:item_count          counter (INCRBY)
    version:{id}:item_count          cached count, expires after a day
    dataset:{id}:op:{type}           hash op_id -> {"ts": ms, "ttl": ms}
    lock:{key}                       holder string, PX ttl

Invariants:
    - Lock release and renewal are compare-and-act Lua scripts, so a
      holder never touches a lock it lost
    - An operation hash expires with its newest record, so abandoned
      hashes disappear on their own
"""

from __future__ import annotations

import json
import logging
from typing import Iterable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..config import RedisConfig
from ..entity import DatasetOperation, DatasetOpType
from .base import KVConnectionError

logger = logging.getLogger(__name__)

_VERSION_COUNT_TTL_S = 24 * 3600

_UNLOCK_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""

_EXPIRE_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("PEXPIRE", KEYS[1], ARGV[2])
end
return 0
"""


class RedisKV:
    """KVStore implementation over redis.asyncio.

    Example:
        >>> kv = RedisKV(RedisConfig(url="redis://localhost:6379/0"))
        >>> await kv.connect()
        >>> await kv.try_lock("version:1:snapshotting", "host-1", 60_000)
        True
    """

    def __init__(self, config: RedisConfig) -> None:
        self.config = config
        self._redis: aioredis.Redis | None = None
        self._unlock_script = None
        self._expire_script = None

    async def connect(self) -> None:
        if self._redis is not None:
            return
        self._redis = aioredis.from_url(self.config.url, decode_responses=True)
        try:
            await self._redis.ping()
        except RedisError as e:
            self._redis = None
            raise KVConnectionError(f"Failed to connect to Redis: {e}") from e
        self._unlock_script = self._redis.register_script(_UNLOCK_LUA)
        self._expire_script = self._redis.register_script(_EXPIRE_LUA)
        logger.info("Connected to Redis", extra={"key_prefix": self.config.key_prefix})

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis connection closed")

    def _r(self) -> aioredis.Redis:
        if self._redis is None:
            raise KVConnectionError("Redis not connected. Call connect() first.")
        return self._redis

    def _k(self, *parts: object) -> str:
        return self.config.key_prefix + ":".join(str(p) for p in parts)

    # Item counters

    async def get_item_count(self, dataset_id: int) -> int:
        raw = await self._r().get(self._k("dataset", dataset_id, "item_count"))
        return int(raw) if raw is not None else 0

    async def set_item_count(self, dataset_id: int, n: int) -> None:
        await self._r().set(self._k("dataset", dataset_id, "item_count"), n)

    async def incr_item_count(self, dataset_id: int, delta: int) -> int:
        return int(await self._r().incrby(self._k("dataset", dataset_id, "item_count"), delta))

    async def mget_item_count(self, dataset_ids: Iterable[int]) -> dict[int, int]:
        ids = list(dataset_ids)
        if not ids:
            return {}
        raws = await self._r().mget([self._k("dataset", i, "item_count") for i in ids])
        return {i: int(raw) if raw is not None else 0 for i, raw in zip(ids, raws)}

    async def get_item_count_of_version(self, version_id: int) -> int | None:
        raw = await self._r().get(self._k("version", version_id, "item_count"))
        return int(raw) if raw is not None else None

    async def set_item_count_of_version(self, version_id: int, n: int) -> None:
        await self._r().set(self._k("version", version_id, "item_count"), n, ex=_VERSION_COUNT_TTL_S)

    # Barrier records

    def _op_key(self, dataset_id: int, op_type: DatasetOpType) -> str:
        return self._k("dataset", dataset_id, "op", op_type.value)

    async def add_dataset_operation(self, dataset_id: int, op: DatasetOperation) -> None:
        key = self._op_key(dataset_id, op.type)
        async with self._r().pipeline(transaction=True) as pipe:
            pipe.hset(key, op.id, json.dumps(op.to_dict()))
            pipe.pexpire(key, op.ttl_ms)
            await pipe.execute()

    async def del_dataset_operation(self, dataset_id: int, op_type: DatasetOpType, op_id: str) -> None:
        await self._r().hdel(self._op_key(dataset_id, op_type), op_id)

    async def mget_dataset_operations(
        self,
        dataset_id: int,
        op_types: Iterable[DatasetOpType],
    ) -> dict[DatasetOpType, list[DatasetOperation]]:
        types = list(op_types)
        async with self._r().pipeline(transaction=False) as pipe:
            for op_type in types:
                pipe.hgetall(self._op_key(dataset_id, op_type))
            results = await pipe.execute()

        out: dict[DatasetOpType, list[DatasetOperation]] = {}
        for op_type, records in zip(types, results):
            ops = []
            for op_id, raw in (records or {}).items():
                try:
                    op = DatasetOperation.from_dict(op_id, op_type, json.loads(raw))
                except (ValueError, TypeError):
                    logger.warning(
                        "Skipping malformed dataset operation",
                        extra={"dataset_id": dataset_id, "op_type": op_type.value, "op_id": op_id},
                    )
                    continue
                if not op.expired():
                    ops.append(op)
            if ops:
                out[op_type] = ops
        return out

    # Lock primitives

    async def try_lock(self, key: str, holder: str, ttl_ms: int) -> bool:
        return bool(await self._r().set(self._k("lock", key), holder, px=ttl_ms, nx=True))

    async def expire(self, key: str, holder: str, ttl_ms: int) -> bool:
        self._r()
        return bool(await self._expire_script(keys=[self._k("lock", key)], args=[holder, ttl_ms]))

    async def unlock(self, key: str, holder: str) -> bool:
        self._r()
        return bool(await self._unlock_script(keys=[self._k("lock", key)], args=[holder]))
