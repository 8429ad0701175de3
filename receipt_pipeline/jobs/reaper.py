"""Reaper for receipts stuck in ``processing``.

A worker that dies, or fails to write its own error state, leaves its receipt
in ``processing`` forever. This sweep moves such rows to ``error`` once they
are older than the staleness window. It is run explicitly (CLI or HTTP), never
on a schedule of its own.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from receipt_pipeline.config import config
from receipt_pipeline.errors import PersistenceFailure
from receipt_pipeline.store.receipts import ReceiptStore

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Processing timed out after {minutes} minutes; please upload the receipt again"


async def reap_stale_receipts(
    store: ReceiptStore,
    older_than_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[str]:
    """Mark stale ``processing`` receipts as ``error``; returns the ids transitioned."""
    minutes = older_than_minutes if older_than_minutes is not None else config.STALE_AFTER_MINUTES
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=minutes)

    stale = await store.list_stale_processing(cutoff)
    if not stale:
        logger.info(f"No receipts stuck in processing before {cutoff.isoformat()}")
        return []

    reaped: list[str] = []
    message = TIMEOUT_MESSAGE.format(minutes=minutes)
    for row in stale:
        receipt_id = str(row["id"])
        try:
            if await store.mark_error(receipt_id, message):
                reaped.append(receipt_id)
        except PersistenceFailure as e:
            logger.error(f"Failed to reap receipt {receipt_id}: {e}")

    logger.info(f"Reaped {len(reaped)}/{len(stale)} stale receipts")
    return reaped
