"""Object storage for receipt images."""
import asyncio
import functools
import logging
from typing import Any, Callable, Optional

from supabase import Client

from receipt_pipeline.config import config
from receipt_pipeline.errors import TransferFailure
from receipt_pipeline.parse.redact import redact_string
from receipt_pipeline.store.client import create_supabase_client

logger = logging.getLogger(__name__)


class ImageStorage:
    """Uploads and downloads images in the receipts bucket."""

    def __init__(self, client: Optional[Client] = None, bucket: Optional[str] = None):
        self.client: Client = client or create_supabase_client()
        self.bucket = bucket or config.STORAGE_BUCKET

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    async def upload(self, path: str, data: bytes, content_type: str = "image/jpeg") -> str:
        """Store ``data`` under ``path`` and return its public URL."""
        try:
            return await self._run(self._upload_sync, path, data, content_type)
        except Exception as e:
            raise TransferFailure(f"Failed to upload image: {redact_string(str(e))}") from e

    def _upload_sync(self, path: str, data: bytes, content_type: str) -> str:
        bucket = self.client.storage.from_(self.bucket)
        bucket.upload(path, data, {"content-type": content_type, "upsert": "false"})
        url = bucket.get_public_url(path)
        logger.info(f"Uploaded {len(data)} bytes to {self.bucket}/{path}")
        return url

    async def download(self, path: Optional[str]) -> bytes:
        """Fetch the bytes stored under ``path``."""
        if not path:
            raise TransferFailure("Failed to download image: receipt has no storage path")
        try:
            data = await self._run(self._download_sync, path)
        except Exception as e:
            raise TransferFailure(f"Failed to download image: {redact_string(str(e))}") from e
        if not data:
            raise TransferFailure(f"Failed to download image: {path} is empty")
        return data

    def _download_sync(self, path: str) -> bytes:
        return self.client.storage.from_(self.bucket).download(path)
