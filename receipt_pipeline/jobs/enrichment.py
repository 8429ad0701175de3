"""Enrichment stage: cheaper alternatives for the line items of a completed receipt.

Two modes share the same filtering and JSON recovery:

* ``compare_receipt`` (automatic, chained after extraction): one request for
  the whole receipt, answered as ``{"<index>": [...]}``.
* ``compare_items`` (on demand, caller-supplied credential): one request per
  item, strictly sequential and rate limited.

Failures are contained per batch / per item and never touch ``status``.
Results are merged per index into the freshly re-read comparisons, so a run
that finds nothing for an item keeps what an earlier run found.
"""
import hashlib
import logging
from typing import Optional

from receipt_pipeline.config import config
from receipt_pipeline.errors import MissingCredential
from receipt_pipeline.fetch.gemini import GeminiClient
from receipt_pipeline.fetch.rate_limit import RateLimiter
from receipt_pipeline.jobs.extraction import resolve_api_key
from receipt_pipeline.parse.comparisons import (
    comparisons_to_row,
    merge_comparisons,
    normalize_alternatives,
    parse_batch_response,
)
from receipt_pipeline.parse.models import LineItem, PriceComparison, Receipt, ReceiptStatus
from receipt_pipeline.parse.prompts import (
    build_batch_comparison_prompt,
    build_item_comparison_prompt,
)
from receipt_pipeline.parse.recovery import recover_json
from receipt_pipeline.store.receipts import ReceiptStore

logger = logging.getLogger(__name__)

Comparisons = dict[int, list[PriceComparison]]


class PriceComparer:
    """Finds and persists cheaper alternatives for receipt items."""

    def __init__(
        self,
        store: ReceiptStore,
        gemini: GeminiClient,
        rate_limiter: Optional[RateLimiter] = None,
        limit: Optional[int] = None,
    ):
        self.store = store
        self.gemini = gemini
        self.rate_limiter = rate_limiter or RateLimiter(config.COMPARISON_RATE)
        self.limit = limit or config.MAX_ALTERNATIVES

    async def _load_completed(self, receipt_id: str) -> Optional[Receipt]:
        receipt = Receipt.from_row(await self.store.get(receipt_id))
        if receipt.status is not ReceiptStatus.COMPLETED:
            logger.info(f"Receipt {receipt_id} is {receipt.status.value}, skipping price comparison")
            return None
        if not receipt.items:
            logger.info(f"Receipt {receipt_id} has no items to compare")
            return None
        return receipt

    async def compare_receipt(self, receipt_id: str) -> Comparisons:
        """Automatic mode: one batched request for every item."""
        receipt = await self._load_completed(receipt_id)
        if receipt is None:
            return {}

        try:
            api_key = await resolve_api_key(self.store, receipt.user_id)
        except MissingCredential:
            logger.info(f"No Gemini API key for receipt {receipt_id}, skipping price comparison")
            return {}

        currency = receipt.currency or config.DEFAULT_CURRENCY
        prompt = build_batch_comparison_prompt(receipt.items, currency, self.limit)
        try:
            text = await self.gemini.compare_prices(api_key, prompt)
            fresh = parse_batch_response(recover_json(text), receipt.items, self.limit)
        except Exception as e:
            logger.warning(f"Batched price comparison failed for receipt {receipt_id}: {e}")
            fresh = {}

        logger.info(f"Receipt {receipt_id}: alternatives found for {len(fresh)}/{len(receipt.items)} items")
        return await self._persist(receipt_id, fresh)

    async def compare_items(self, receipt_id: str, api_key: Optional[str]) -> Comparisons:
        """On-demand mode: one request per item, in order."""
        if not api_key:
            raise MissingCredential("Price comparison requires a Gemini API key")

        receipt = await self._load_completed(receipt_id)
        if receipt is None:
            return {}

        currency = receipt.currency or config.DEFAULT_CURRENCY
        limiter_key = hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]
        fresh: Comparisons = {}
        for index, item in enumerate(receipt.items):
            if item.unit_price <= 0:
                continue
            await self.rate_limiter.acquire(limiter_key)
            try:
                alternatives = await self._compare_item(api_key, item, currency)
            except Exception as e:
                logger.warning(f"Price comparison failed for receipt {receipt_id} item {index}: {e}")
                continue
            if alternatives:
                fresh[index] = alternatives

        logger.info(f"Receipt {receipt_id}: alternatives found for {len(fresh)}/{len(receipt.items)} items")
        return await self._persist(receipt_id, fresh)

    async def _compare_item(self, api_key: str, item: LineItem, currency: str) -> list[PriceComparison]:
        prompt = build_item_comparison_prompt(item, currency, self.limit)
        payload = recover_json(await self.gemini.compare_prices(api_key, prompt))
        return normalize_alternatives(payload.get("alternatives"), item.unit_price, self.limit)

    async def _persist(self, receipt_id: str, fresh: Comparisons) -> Comparisons:
        current = Receipt.from_row(await self.store.get(receipt_id))
        merged = merge_comparisons(current.price_comparisons, fresh, len(current.items))
        if not fresh and current.price_comparisons is not None:
            # Nothing new; keep the existing write untouched
            return merged
        await self.store.save_price_comparisons(receipt_id, comparisons_to_row(merged))
        return merged
