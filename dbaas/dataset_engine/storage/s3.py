"""
S3 payload driver (aiobotocore).

Objects live at s3://<bucket>/<item_prefix>/<storage_key>.json.

Invariants:
    - Writes of one batch run concurrently, bounded by max_concurrent
    - A missing object on read is an InternalError, never an empty item
"""

from __future__ import annotations

import asyncio
import logging

from aiobotocore.session import get_session
from botocore.exceptions import ClientError

from ..config import S3Config
from ..entity import Item
from ..errors import InternalError
from .base import decode_payload, encode_payload

logger = logging.getLogger(__name__)


class S3PayloadDriver:
    """Stores item payloads as JSON objects in S3 (or MinIO)."""

    def __init__(self, config: S3Config, max_concurrent: int = 16) -> None:
        self.config = config
        self._session = None
        self._s3_ctx = None
        self._s3_client = None
        self._semaphore = asyncio.Semaphore(max_concurrent)

    async def connect(self) -> None:
        """Initialize S3 client."""
        if self._s3_client is not None:
            return
        self._session = get_session()

        client_kwargs = {
            "region_name": self.config.region,
        }

        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url

        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()
        logger.info("S3 payload driver connected", extra={"bucket": self.config.bucket})

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    def _object_key(self, storage_key: str) -> str:
        return f"{self.config.item_prefix}/{storage_key}.json"

    def _client(self):
        if self._s3_client is None:
            raise InternalError("S3 payload driver not connected")
        return self._s3_client

    async def _put(self, item: Item) -> None:
        body = encode_payload(item)
        async with self._semaphore:
            await self._client().put_object(
                Bucket=self.config.bucket,
                Key=self._object_key(item.data_properties.storage_key),
                Body=body,
                ContentType="application/json",
            )

    async def _get(self, item: Item) -> None:
        key = self._object_key(item.data_properties.storage_key)
        async with self._semaphore:
            try:
                response = await self._client().get_object(Bucket=self.config.bucket, Key=key)
            except ClientError as e:
                raise InternalError(f"get item payload {key}: {e}") from e
            async with response["Body"] as stream:
                raw = await stream.read()
        decode_payload(item, raw)

    async def mset_item_data(self, items: list[Item]) -> None:
        await asyncio.gather(*(self._put(item) for item in items))

    async def mget_item_data(self, items: list[Item]) -> None:
        await asyncio.gather(*(self._get(item) for item in items))
