"""
Protocols for the fast key-value collaborators of the dataset engine.

Three concerns share one store: the per-dataset item counter, the
operation barrier records, and the primitives behind the distributed lock.

Invariants:
    - incr_item_count is atomic and returns the new value
    - Barrier records carry their own ts/ttl; readers drop expired ones
    - try_lock/expire/unlock only act when the caller is the holder

How to change safely:
    - Protocol changes require updating all implementations
    - Keep key layouts stable; several processes share one store
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Iterable, Protocol, runtime_checkable

from ..entity import DatasetOperation, DatasetOpType

if TYPE_CHECKING:
    from ..config import EngineConfig


class KVError(Exception):
    """Base exception for KV operations."""


class KVConnectionError(KVError):
    """Connection to the KV backend failed."""


@runtime_checkable
class ItemCounterStore(Protocol):
    """Atomic item counters of datasets and cached counts of versions."""

    @abstractmethod
    async def get_item_count(self, dataset_id: int) -> int:
        """Current counter value, 0 when unset."""
        ...

    @abstractmethod
    async def set_item_count(self, dataset_id: int, n: int) -> None:
        ...

    @abstractmethod
    async def incr_item_count(self, dataset_id: int, delta: int) -> int:
        """Add delta (may be negative) and return the new value."""
        ...

    @abstractmethod
    async def mget_item_count(self, dataset_ids: Iterable[int]) -> dict[int, int]:
        ...

    @abstractmethod
    async def get_item_count_of_version(self, version_id: int) -> int | None:
        """Cached live-item count of a version, None on cache miss."""
        ...

    @abstractmethod
    async def set_item_count_of_version(self, version_id: int, n: int) -> None:
        ...


@runtime_checkable
class OperationStore(Protocol):
    """Barrier records, one logical set per (dataset, operation kind)."""

    @abstractmethod
    async def add_dataset_operation(self, dataset_id: int, op: DatasetOperation) -> None:
        ...

    @abstractmethod
    async def del_dataset_operation(self, dataset_id: int, op_type: DatasetOpType, op_id: str) -> None:
        ...

    @abstractmethod
    async def mget_dataset_operations(
        self,
        dataset_id: int,
        op_types: Iterable[DatasetOpType],
    ) -> dict[DatasetOpType, list[DatasetOperation]]:
        """Outstanding (unexpired) operations per requested kind."""
        ...


@runtime_checkable
class LockBackend(Protocol):
    """Holder-checked primitives of a TTL lock."""

    @abstractmethod
    async def try_lock(self, key: str, holder: str, ttl_ms: int) -> bool:
        """Set key to holder if absent. Returns whether the lock was taken."""
        ...

    @abstractmethod
    async def expire(self, key: str, holder: str, ttl_ms: int) -> bool:
        """Reset the TTL if holder still owns key."""
        ...

    @abstractmethod
    async def unlock(self, key: str, holder: str) -> bool:
        """Delete key if holder still owns it."""
        ...


@runtime_checkable
class KVStore(ItemCounterStore, OperationStore, LockBackend, Protocol):
    """A single store serving counters, barrier records and locks."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


def create_kv_store(config: "EngineConfig") -> KVStore:
    """Factory function to create a KV store from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import KVBackend

    if config.kv_backend == KVBackend.MEMORY:
        from .memory import InMemoryKV

        return InMemoryKV()
    elif config.kv_backend == KVBackend.REDIS:
        from .redis import RedisKV

        return RedisKV(config.redis)
    else:
        raise ValueError(f"Unsupported KV backend: {config.kv_backend}")
