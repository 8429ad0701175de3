"""Supabase-backed receipt store.

Every mutation is a single-row update. Transitions out of ``processing`` are
conditional on the row still being in ``processing``, so a terminal record
is never rewritten by a late or duplicated worker.
"""
import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from supabase import Client
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from receipt_pipeline.config import config
from receipt_pipeline.errors import NotFound, PersistenceFailure
from receipt_pipeline.parse.models import ReceiptStatus, utcnow_iso
from receipt_pipeline.parse.redact import redact_string
from receipt_pipeline.store.client import create_supabase_client

logger = logging.getLogger(__name__)

PLACEHOLDER_MERCHANT = "Processing..."
ERROR_MESSAGE_LIMIT = 1000


class ReceiptStore:
    """Reads and writes receipt rows (runs in thread pool since Supabase is sync)."""

    def __init__(
        self,
        client: Optional[Client] = None,
        table: Optional[str] = None,
        settings_table: Optional[str] = None,
    ):
        self.client: Client = client or create_supabase_client()
        self.table = table or config.RECEIPTS_TABLE
        self.settings_table = settings_table or config.SETTINGS_TABLE

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    # ── reads ────────────────────────────────────────────────────────────

    async def get(self, receipt_id: str) -> dict[str, Any]:
        """Fetch a fresh copy of the row; ``NotFound`` only when no row matches."""
        try:
            rows = await self._run(self._select_sync, receipt_id)
        except Exception as e:
            raise PersistenceFailure(f"Failed to read receipt {receipt_id}: {redact_string(str(e))}") from e
        if not rows:
            raise NotFound(f"Receipt not found: {receipt_id}")
        return rows[0]

    @retry(
        stop=stop_after_attempt(config.MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((ConnectionError, TimeoutError)),
        reraise=True,
    )
    def _select_sync(self, receipt_id: str) -> list[dict[str, Any]]:
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("id", receipt_id)
            .limit(1)
            .execute()
        )
        return response.data or []

    async def get_user_api_key(self, user_id: Optional[str]) -> Optional[str]:
        """Extraction credential stored in the caller's settings, if any."""
        if not user_id:
            return None
        try:
            rows = await self._run(self._select_settings_sync, user_id)
        except Exception as e:
            raise PersistenceFailure(f"Failed to read user settings: {redact_string(str(e))}") from e
        if not rows:
            return None
        key = rows[0].get("gemini_api_key")
        return key.strip() if isinstance(key, str) and key.strip() else None

    def _select_settings_sync(self, user_id: str) -> list[dict[str, Any]]:
        response = (
            self.client.table(self.settings_table)
            .select("gemini_api_key")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        return response.data or []

    async def list_stale_processing(self, cutoff: datetime) -> list[dict[str, Any]]:
        """Rows still ``processing`` whose last transition is older than ``cutoff``."""
        try:
            return await self._run(self._select_stale_sync, cutoff.isoformat())
        except Exception as e:
            raise PersistenceFailure(f"Failed to list stale receipts: {redact_string(str(e))}") from e

    def _select_stale_sync(self, cutoff_iso: str) -> list[dict[str, Any]]:
        response = (
            self.client.table(self.table)
            .select("id, status, created_at, updated_at")
            .eq("status", ReceiptStatus.PROCESSING.value)
            .lt("updated_at", cutoff_iso)
            .execute()
        )
        return response.data or []

    # ── writes ───────────────────────────────────────────────────────────

    async def create_processing(
        self, user_id: str, storage_path: str, image_url: Optional[str]
    ) -> dict[str, Any]:
        """Insert a new job record in ``processing`` with placeholder fields."""
        now = datetime.now(timezone.utc)
        row = {
            "user_id": user_id,
            "status": ReceiptStatus.PROCESSING.value,
            "storage_path": storage_path,
            "image_url": image_url,
            "merchant": PLACEHOLDER_MERCHANT,
            "date": now.date().isoformat(),
            "total": 0,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
        }
        try:
            rows = await self._run(self._insert_sync, row)
        except Exception as e:
            raise PersistenceFailure(f"Failed to create receipt record: {redact_string(str(e))}") from e
        if not rows:
            raise PersistenceFailure("Failed to create receipt record: no row returned")
        logger.info(f"Created receipt {rows[0].get('id')} in processing ({storage_path})")
        return rows[0]

    def _insert_sync(self, row: dict[str, Any]) -> list[dict[str, Any]]:
        response = self.client.table(self.table).insert(row).execute()
        return response.data or []

    async def mark_completed(self, receipt_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """``processing -> completed`` with the extracted fields."""
        update = {
            **fields,
            "status": ReceiptStatus.COMPLETED.value,
            "error_message": None,
            "updated_at": utcnow_iso(),
        }
        try:
            rows = await self._run(self._transition_sync, receipt_id, update)
        except Exception as e:
            raise PersistenceFailure(f"Failed to update receipt: {redact_string(str(e))}") from e
        if not rows:
            raise PersistenceFailure(f"Failed to update receipt: {receipt_id} is no longer processing")
        logger.info(f"Receipt {receipt_id} -> completed")
        return rows[0]

    async def mark_error(self, receipt_id: str, message: str) -> bool:
        """``processing -> error``; returns False if the row had already left ``processing``."""
        update = {
            "status": ReceiptStatus.ERROR.value,
            "error_message": redact_string(message or "Unknown error")[:ERROR_MESSAGE_LIMIT],
            "updated_at": utcnow_iso(),
        }
        try:
            rows = await self._run(self._transition_sync, receipt_id, update)
        except Exception as e:
            raise PersistenceFailure(f"Failed to record error state: {redact_string(str(e))}") from e
        if not rows:
            logger.warning(f"Receipt {receipt_id} not in processing, error state not written")
            return False
        logger.info(f"Receipt {receipt_id} -> error")
        return True

    def _transition_sync(self, receipt_id: str, update: dict[str, Any]) -> list[dict[str, Any]]:
        response = (
            self.client.table(self.table)
            .update(update)
            .eq("id", receipt_id)
            .eq("status", ReceiptStatus.PROCESSING.value)
            .execute()
        )
        return response.data or []

    async def save_price_comparisons(
        self, receipt_id: str, comparisons: dict[str, list[dict[str, Any]]]
    ) -> None:
        """Write the enrichment result; the primary status is left untouched."""
        update = {
            "price_comparisons": comparisons,
            "price_comparisons_updated_at": utcnow_iso(),
        }
        try:
            await self._run(self._update_sync, receipt_id, update)
        except Exception as e:
            raise PersistenceFailure(f"Failed to save price comparisons: {redact_string(str(e))}") from e
        logger.info(f"Saved price comparisons for receipt {receipt_id} ({len(comparisons)} items)")

    def _update_sync(self, receipt_id: str, update: dict[str, Any]) -> None:
        self.client.table(self.table).update(update).eq("id", receipt_id).execute()

    async def test_connection(self) -> bool:
        """Test Supabase connection."""
        try:
            await self._run(
                lambda: self.client.table(self.table).select("id", count="exact").limit(1).execute()
            )
            logger.info("Supabase connection successful")
            return True
        except Exception as e:
            logger.error(f"Supabase connection test failed: {e}")
            return False
