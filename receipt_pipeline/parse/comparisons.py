"""Normalization of price-comparison results.

Model-supplied savings figures are never trusted: they are recomputed from
the original unit price, and only strictly cheaper alternatives survive.
"""
import logging
from typing import Any, Iterable, Optional, Sequence

from pydantic import ValidationError

from receipt_pipeline.parse.models import LineItem, PriceComparison, parse_decimal

logger = logging.getLogger(__name__)

AVAILABILITY_VALUES = ("online", "local", "both")


def _availability(raw: dict[str, Any]) -> str:
    value = raw.get("availability")
    if isinstance(value, str) and value.strip().lower() in AVAILABILITY_VALUES:
        return value.strip().lower()
    return "online" if raw.get("url") else "local"


def _optional_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def normalize_alternative(raw: Any, original_price: float) -> Optional[PriceComparison]:
    """Build a ``PriceComparison`` from one model entry, or ``None`` if it is unusable."""
    if not isinstance(raw, dict) or original_price <= 0:
        return None

    store_name = _optional_text(raw.get("storeName") or raw.get("store_name"))
    price = parse_decimal(raw.get("price"))
    if not store_name or price is None or price <= 0 or price >= original_price:
        return None

    savings = original_price - price
    try:
        return PriceComparison(
            store_name=store_name,
            price=price,
            savings=savings,
            savings_percent=savings / original_price * 100,
            availability=_availability(raw),
            location=_optional_text(raw.get("location")),
            url=_optional_text(raw.get("url")),
        )
    except ValidationError as e:
        logger.debug(f"Dropping invalid alternative {raw!r}: {e}")
        return None


def normalize_alternatives(
    raw_alternatives: Any, original_price: float, limit: int
) -> list[PriceComparison]:
    """Filter to true savings, sort by savings descending and cap at ``limit``."""
    if not isinstance(raw_alternatives, list):
        return []
    alternatives = [
        alt
        for alt in (normalize_alternative(raw, original_price) for raw in raw_alternatives)
        if alt is not None
    ]
    alternatives.sort(key=lambda alt: alt.savings, reverse=True)
    return alternatives[:limit]


def parse_batch_response(
    payload: dict[str, Any], items: Sequence[LineItem], limit: int
) -> dict[int, list[PriceComparison]]:
    """Map a ``{"<index>": [...]}`` response onto valid item indexes."""
    results: dict[int, list[PriceComparison]] = {}
    for key, raw_alternatives in payload.items():
        try:
            index = int(str(key).strip())
        except ValueError:
            logger.debug(f"Ignoring non-index key {key!r} in comparison response")
            continue
        if index < 0 or index >= len(items):
            logger.debug(f"Ignoring out-of-range index {index} (items={len(items)})")
            continue
        alternatives = normalize_alternatives(raw_alternatives, items[index].unit_price, limit)
        if alternatives:
            results[index] = alternatives
    return results


def merge_comparisons(
    existing: Optional[dict[int, Iterable[PriceComparison]]],
    fresh: dict[int, list[PriceComparison]],
    item_count: int,
) -> dict[int, list[PriceComparison]]:
    """Indexes present in ``fresh`` replace earlier entries; the rest are kept."""
    merged: dict[int, list[PriceComparison]] = {
        index: list(alternatives)
        for index, alternatives in (existing or {}).items()
        if 0 <= index < item_count
    }
    merged.update(fresh)
    return dict(sorted(merged.items()))


def comparisons_to_row(comparisons: dict[int, list[PriceComparison]]) -> dict[str, list[dict[str, Any]]]:
    """Wire shape: string keys, camelCase alternatives."""
    return {
        str(index): [alt.to_row() for alt in alternatives]
        for index, alternatives in comparisons.items()
    }
