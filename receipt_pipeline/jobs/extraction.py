"""Extraction worker: one invocation turns one ``processing`` receipt into a terminal one.

    processing --(extracted & written)--> completed --> enrichment dispatched
    processing --(any fatal failure)----> error

Nothing is retried here; a failed receipt is re-uploaded as a new job.
"""
import logging
import mimetypes
from typing import Optional

from pydantic import ValidationError

from receipt_pipeline.config import config
from receipt_pipeline.errors import MalformedOutput, MissingCredential
from receipt_pipeline.fetch.functions import COMPARE_PRICES, FunctionInvoker
from receipt_pipeline.fetch.gemini import GeminiClient
from receipt_pipeline.parse.models import ExtractedReceipt, ProcessResult, ReceiptStatus
from receipt_pipeline.parse.prompts import build_extraction_prompt
from receipt_pipeline.parse.recovery import recover_json
from receipt_pipeline.parse.redact import redact_string
from receipt_pipeline.store.images import ImageStorage
from receipt_pipeline.store.receipts import ReceiptStore

logger = logging.getLogger(__name__)


def guess_mime_type(path: Optional[str]) -> str:
    mime_type, _ = mimetypes.guess_type(path or "")
    return mime_type if mime_type and mime_type.startswith("image/") else "image/jpeg"


async def resolve_api_key(store: ReceiptStore, user_id: Optional[str]) -> str:
    """The caller's stored credential, else the deployment-wide one."""
    api_key = await store.get_user_api_key(user_id) or config.GEMINI_API_KEY
    if not api_key:
        raise MissingCredential("User Gemini API key not configured")
    return api_key


class ExtractionWorker:
    """Processes a single receipt job."""

    def __init__(
        self,
        store: ReceiptStore,
        images: ImageStorage,
        gemini: GeminiClient,
        invoker: Optional[FunctionInvoker] = None,
    ):
        self.store = store
        self.images = images
        self.gemini = gemini
        self.invoker = invoker

    async def process(self, receipt_id: str) -> ProcessResult:
        """Run extraction for ``receipt_id``; fatal failures are re-raised after the error write."""
        if not receipt_id:
            raise ValueError("Receipt ID is required")

        located = False
        try:
            receipt = await self.store.get(receipt_id)
            located = True

            status = receipt.get("status") or ReceiptStatus.PROCESSING.value
            if status != ReceiptStatus.PROCESSING.value:
                logger.info(f"Receipt {receipt_id} already {status}, skipping extraction")
                return ProcessResult(receipt_id=receipt_id, status="skipped")

            api_key = await resolve_api_key(self.store, receipt.get("user_id"))

            storage_path = receipt.get("storage_path")
            image = await self.images.download(storage_path)
            logger.info(f"Receipt {receipt_id}: downloaded {len(image)} bytes")

            raw_text = await self.gemini.extract_receipt(
                api_key,
                build_extraction_prompt(),
                image,
                mime_type=guess_mime_type(storage_path),
            )
            logger.debug(f"Receipt {receipt_id}: model returned {len(raw_text)} chars")

            extracted = self._parse(raw_text)
            fields = extracted.completion_fields()
            await self.store.mark_completed(receipt_id, fields)
            logger.info(
                f"Receipt {receipt_id} completed: merchant={fields['merchant']!r} "
                f"total={fields['total']} {fields['currency']} items={len(fields['items'])}"
            )
        except Exception as e:
            message = redact_string(str(e)) or type(e).__name__
            logger.error(f"Error processing receipt {receipt_id}: {message}", exc_info=True)
            if located:
                await self._record_failure(receipt_id, message)
            raise

        if self.invoker is not None:
            self.invoker.dispatch(COMPARE_PRICES, receipt_id)
        return ProcessResult(receipt_id=receipt_id, status="completed")

    def _parse(self, raw_text: str) -> ExtractedReceipt:
        payload = recover_json(raw_text)
        try:
            return ExtractedReceipt.model_validate(payload)
        except ValidationError as e:
            raise MalformedOutput(
                f"Model response does not match the receipt schema: {e.error_count()} invalid field(s)",
                length=len(raw_text),
            ) from e

    async def _record_failure(self, receipt_id: str, message: str) -> None:
        """Best effort: a failure here leaves the receipt in ``processing``."""
        try:
            await self.store.mark_error(receipt_id, message)
        except Exception as e:
            logger.error(f"Failed to update error status for receipt {receipt_id}: {e}")
