"""Redaction module to mask credentials in error messages and logs."""
import re

REDACTED = "[REDACTED]"

# (pattern, replacement)
_PATTERNS = [
    (r"([?&]key=)[^&\s\"']+", r"\1" + REDACTED),
    (r"AIza[0-9A-Za-z_\-]{20,}", REDACTED),
    (r"(Authorization[\"']?\s*[:=]\s*[\"']?Bearer\s+)[^\s\"']+", r"\1" + REDACTED),
    (r"(Bearer\s+)[A-Za-z0-9_\-\.=]{16,}", r"\1" + REDACTED),
    (r"(apikey[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]+", r"\1" + REDACTED),
    (r"(gemini_api_key[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]+", r"\1" + REDACTED),
]


def redact_string(text: str) -> str:
    """Redact secrets from a string."""
    if not text:
        return text

    result = text
    for pattern, replacement in _PATTERNS:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)
    return result
