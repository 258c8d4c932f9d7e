"""
Fast key-value collaborators: item counters, barrier records and locks.

Backends:
    - InMemoryKV: tests and single-process development
    - RedisKV: production, shared by every engine instance
"""

from .base import (
    ItemCounterStore,
    KVConnectionError,
    KVError,
    KVStore,
    LockBackend,
    OperationStore,
    create_kv_store,
)
from .lock import Locker, LockLease
from .memory import InMemoryKV

__all__ = [
    # Protocols
    "ItemCounterStore",
    "KVStore",
    "LockBackend",
    "OperationStore",
    "create_kv_store",
    # Errors
    "KVConnectionError",
    "KVError",
    # Implementations
    "InMemoryKV",
    # Locking
    "LockLease",
    "Locker",
]
