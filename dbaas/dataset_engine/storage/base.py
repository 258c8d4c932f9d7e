"""
Tiered item payload storage.

Each item's payload goes to the first provider, ordered by ascending
max_size, whose max_size fits data_properties.bytes. The ``rds`` provider
keeps the payload inline in the item row; any other provider receives the
payload as JSON under a deterministic storage key and the in-memory
payload is cleared, so the row only stores the pointer.

Invariants:
    - Tiers are sorted ascending by max_size at construction
    - storage_key = dataset:{dataset_id}:item:{item_id}:vn:{add_vn}
    - Items must have ids and add_vn assigned before save()
    - Adding a provider never requires changes in the item service

How to change safely:
    - Never change the storage key layout; persisted rows point at it
    - Keep the payload JSON shape {"data": [...], "repeated_data": [...]}
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..entity import Item, Provider
from ..errors import InternalError

if TYPE_CHECKING:
    from ..config import EngineConfig

logger = logging.getLogger(__name__)


def item_storage_key(item: Item) -> str:
    return f"dataset:{item.dataset_id}:item:{item.item_id}:vn:{item.add_vn}"


def encode_payload(item: Item) -> bytes:
    """Serialize the payload of an item.

    Raises:
        InternalError: If the payload is not JSON serializable
    """
    try:
        return json.dumps(item.payload_to_dict(), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise InternalError(f"marshal payload of item {item.item_id}: {e}") from e


def decode_payload(item: Item, raw: bytes | str) -> None:
    """Load a serialized payload into an item.

    Raises:
        InternalError: If the payload is not valid JSON
    """
    try:
        payload: dict[str, Any] = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise InternalError(f"unmarshal payload of item {item.item_id}: {e}") from e
    item.load_payload(payload)


@runtime_checkable
class PayloadDriver(Protocol):
    """Stores item payloads in an external provider.

    Drivers read item.data_properties.storage_key and the item payload;
    mget_item_data loads payloads back into the given items.
    """

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def mset_item_data(self, items: list[Item]) -> None:
        """Write the payload of every item under its storage key."""
        ...

    @abstractmethod
    async def mget_item_data(self, items: list[Item]) -> None:
        """Load the payload of every item from its storage key.

        Raises:
            InternalError: If a payload is missing
        """
        ...


class TieredPayloadStore:
    """Routes item payloads to providers by size.

    Example:
        >>> store = TieredPayloadStore([("rds", 65536), ("s3", 64 << 20)], {Provider.S3: s3})
        >>> await store.save(items)   # large items now point at S3
        >>> await store.load(items)   # and are filled back in
    """

    def __init__(
        self,
        tiers: list[tuple[str, int]] | tuple[tuple[str, int], ...],
        drivers: dict[Provider, PayloadDriver] | None = None,
    ) -> None:
        self.tiers = sorted(((Provider(name), size) for name, size in tiers), key=lambda t: t[1])
        self.drivers = drivers or {}
        for provider, _ in self.tiers:
            if provider != Provider.RDS and provider not in self.drivers:
                raise ValueError(f"No payload driver configured for provider '{provider.value}'")

    def pick(self, n_bytes: int) -> Provider:
        """First provider whose max_size fits n_bytes.

        Raises:
            InternalError: If no provider is large enough
        """
        for provider, max_size in self.tiers:
            if max_size >= n_bytes:
                return provider
        raise InternalError(f"no item storage provider fits {n_bytes} bytes")

    async def save(self, items: list[Item]) -> None:
        """Assign a provider to each item and offload external payloads."""
        groups: dict[Provider, list[Item]] = defaultdict(list)
        for item in items:
            props = item.get_or_build_properties()
            provider = self.pick(props.bytes)
            props.storage = provider
            if provider == Provider.RDS:
                props.storage_key = ""
                continue
            props.storage_key = item_storage_key(item)
            groups[provider].append(item)

        for provider, group in groups.items():
            await self.drivers[provider].mset_item_data(group)
            for item in group:
                item.clear_data()
            logger.debug(
                "Saved item payloads",
                extra={"provider": provider.value, "count": len(group)},
            )

    async def load(self, items: list[Item]) -> None:
        """Fill in payloads of items stored outside the row."""
        groups: dict[Provider, list[Item]] = defaultdict(list)
        for item in items:
            props = item.data_properties
            if props is None or props.storage in (None, Provider.RDS):
                continue
            groups[props.storage].append(item)

        for provider, group in groups.items():
            driver = self.drivers.get(provider)
            if driver is None:
                raise InternalError(f"no payload driver for provider '{provider.value}'")
            await driver.mget_item_data(group)

    async def connect(self) -> None:
        for driver in self.drivers.values():
            await driver.connect()

    async def close(self) -> None:
        for driver in self.drivers.values():
            await driver.close()


def create_payload_store(config: "EngineConfig") -> TieredPayloadStore:
    """Factory function to create the tiered store from configuration."""
    from .redis import RedisPayloadDriver
    from .s3 import S3PayloadDriver

    drivers: dict[Provider, PayloadDriver] = {}
    for name, _ in config.item_storage.providers:
        provider = Provider(name)
        if provider == Provider.S3:
            drivers[provider] = S3PayloadDriver(config.s3)
        elif provider == Provider.ABASE:
            drivers[provider] = RedisPayloadDriver(config.redis)
    return TieredPayloadStore(config.item_storage.providers, drivers)
