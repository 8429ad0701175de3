"""Recover a JSON object from model output.

Models are asked for bare JSON but routinely wrap it in markdown fences,
surround it with prose or leave trailing commas behind. ``clean_json_text``
applies a fixed, ordered set of normalizations; ``recover_json`` parses the
result once and reports anything still broken as ``MalformedOutput``.
"""
import logging
import re
from typing import Any, Dict, Optional

import orjson

from receipt_pipeline.errors import MalformedOutput

logger = logging.getLogger(__name__)

CONTEXT_RADIUS = 100

_FENCE_OPEN = re.compile(r"^```[A-Za-z0-9_\-]*[ \t]*\r?\n?")
_FENCE_CLOSE = re.compile(r"\r?\n?```\s*$")
_OUTER_OBJECT = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


def strip_code_fence(text: str) -> str:
    """Remove a leading/trailing markdown fence, with or without a language tag."""
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = _FENCE_OPEN.sub("", stripped, count=1)
        stripped = _FENCE_CLOSE.sub("", stripped, count=1)
    return stripped.strip()


def clean_json_text(text: str) -> str:
    """Normalize raw model output into a candidate JSON document.

    Total: never raises, returns ``""`` for empty input.
    """
    if not text:
        return ""

    cleaned = strip_code_fence(text)

    # Greedy: first "{" to last "}"
    match = _OUTER_OBJECT.search(cleaned)
    if match:
        cleaned = match.group(0)

    return _TRAILING_COMMA.sub(r"\1", cleaned)


def error_context(text: str, position: Optional[int], radius: int = CONTEXT_RADIUS) -> Optional[str]:
    """Return the text surrounding ``position``, if there is one."""
    if position is None or not text:
        return None
    start = max(0, position - radius)
    end = min(len(text), position + radius)
    return text[start:end]


def recover_json(text: str) -> Dict[str, Any]:
    """Parse model output into a JSON object or raise ``MalformedOutput``."""
    cleaned = clean_json_text(text)

    try:
        parsed = orjson.loads(cleaned)
    except orjson.JSONDecodeError as e:
        position = getattr(e, "pos", None)
        context = error_context(cleaned, position)
        logger.error(f"Failed to parse model output ({len(cleaned)} chars): {e}")
        if context is not None:
            logger.error(f"Context around error position {position}: {context!r}")
        message = f"Failed to parse model response: {e}. Response length: {len(cleaned)}"
        if context is not None:
            message += f". Near: {context!r}"
        raise MalformedOutput(message, length=len(cleaned), context=context) from e

    if not isinstance(parsed, dict):
        raise MalformedOutput(
            f"Expected a JSON object, got {type(parsed).__name__}. Response length: {len(cleaned)}",
            length=len(cleaned),
        )
    return parsed
