"""In-memory payload driver for tests and local development."""

from __future__ import annotations

from ..entity import Item
from ..errors import InternalError
from .base import decode_payload, encode_payload


class InMemoryPayloadDriver:
    """Keeps serialized payloads in a dict keyed by storage key."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def mset_item_data(self, items: list[Item]) -> None:
        for item in items:
            self.objects[item.data_properties.storage_key] = encode_payload(item)

    async def mget_item_data(self, items: list[Item]) -> None:
        for item in items:
            key = item.data_properties.storage_key
            raw = self.objects.get(key)
            if raw is None:
                raise InternalError(f"item payload not found, key={key}")
            decode_payload(item, raw)
