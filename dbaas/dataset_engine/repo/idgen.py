"""
Batch ID generation.

IDs are time ordered: milliseconds since a custom epoch in the high bits,
a per-millisecond sequence in the low bits. The repository falls back to
SQLite auto-increment when generation fails.
"""

from __future__ import annotations

import logging
import time
from abc import abstractmethod
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# 2024-01-01T00:00:00Z
EPOCH_MS = 1_704_067_200_000
SEQUENCE_BITS = 16
MAX_BATCH = 1 << SEQUENCE_BITS


class IDGenerationError(Exception):
    """IDs could not be generated."""


@runtime_checkable
class IDGenerator(Protocol):
    @abstractmethod
    async def gen_multi_ids(self, n: int) -> list[int]:
        """Generate n unique, increasing ids.

        Raises:
            IDGenerationError: If generation fails
        """
        ...


class TimeOrderedIDGenerator:
    """Process-local generator of increasing 63-bit ids.

    Example:
        >>> gen = TimeOrderedIDGenerator()
        >>> a, b = await gen.gen_multi_ids(2)
        >>> a < b
        True
    """

    def __init__(self) -> None:
        self._last_ms = 0
        self._seq = 0

    async def gen_multi_ids(self, n: int) -> list[int]:
        if n <= 0:
            return []
        if n > MAX_BATCH:
            raise IDGenerationError(f"cannot generate {n} ids at once, max {MAX_BATCH}")

        ids = []
        for _ in range(n):
            ms = max(int(time.time() * 1000) - EPOCH_MS, self._last_ms)
            if ms == self._last_ms:
                self._seq += 1
                if self._seq >= MAX_BATCH:
                    # Sequence exhausted, borrow the next millisecond.
                    ms += 1
                    self._seq = 0
            else:
                self._seq = 0
            self._last_ms = ms
            ids.append((ms << SEQUENCE_BITS) | self._seq)
        return ids
