"""
Item payload storage tiers.

Small payloads stay inline in the item row (``rds``); larger ones are
offloaded to S3 or to the ``abase`` key-value store.
"""

from .base import (
    PayloadDriver,
    TieredPayloadStore,
    create_payload_store,
    decode_payload,
    encode_payload,
    item_storage_key,
)
from .memory import InMemoryPayloadDriver

__all__ = [
    "InMemoryPayloadDriver",
    "PayloadDriver",
    "TieredPayloadStore",
    "create_payload_store",
    "decode_payload",
    "encode_payload",
    "item_storage_key",
]
