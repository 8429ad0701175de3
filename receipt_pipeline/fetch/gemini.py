"""HTTP client for the vision-language extraction and comparison service."""
import base64
import logging
from typing import Any, Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from receipt_pipeline.config import config
from receipt_pipeline.errors import UpstreamFailure
from receipt_pipeline.parse.prompts import (
    COMPARISON_GENERATION_CONFIG,
    EXTRACTION_GENERATION_CONFIG,
)
from receipt_pipeline.parse.redact import redact_string

logger = logging.getLogger(__name__)


def response_text(data: Any) -> str:
    """Concatenate the text parts of the first candidate."""
    if not isinstance(data, dict):
        return ""
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    content = candidates[0].get("content") or {}
    parts = content.get("parts") or []
    return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


class GeminiClient:
    """Issues generateContent requests; one call per invocation, no implicit retries."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        if client is None:
            limits = httpx.Limits(
                max_connections=20,
                max_keepalive_connections=5,
            )
            client = httpx.AsyncClient(
                http2=True,
                timeout=config.TIMEOUT,
                limits=limits,
            )
        self.client = client
        self.model = model or config.GEMINI_MODEL
        self.base_url = (base_url or config.GEMINI_BASE_URL).rstrip("/")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    @retry(
        stop=stop_after_attempt(config.MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _post(self, api_key: str, body: dict) -> httpx.Response:
        return await self.client.post(
            self.endpoint,
            json=body,
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
        )

    async def generate(self, api_key: str, parts: list[dict], generation_config: dict) -> str:
        """Send one request and return the raw model text."""
        body = {
            "contents": [{"parts": parts}],
            "generationConfig": generation_config,
        }
        try:
            response = await self._post(api_key, body)
        except httpx.HTTPError as e:
            logger.warning(f"Request to extraction service failed: {e}")
            raise UpstreamFailure(f"Gemini API request failed: {redact_string(str(e))}") from e

        if response.status_code >= 400:
            detail = redact_string(response.text[:500])
            raise UpstreamFailure(
                f"Gemini API error ({response.status_code}): {detail}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamFailure("Gemini API returned a non-JSON envelope", response.status_code) from e

        text = response_text(data)
        if not text.strip():
            raise UpstreamFailure("No response from Gemini", response.status_code)
        return text

    async def extract_receipt(
        self, api_key: str, prompt: str, image: bytes, mime_type: str = "image/jpeg"
    ) -> str:
        """Structured extraction: instruction text plus the inlined image."""
        parts = [
            {"text": prompt},
            {
                "inline_data": {
                    "mime_type": mime_type,
                    "data": base64.b64encode(image).decode("ascii"),
                }
            },
        ]
        return await self.generate(api_key, parts, EXTRACTION_GENERATION_CONFIG)

    async def compare_prices(self, api_key: str, prompt: str) -> str:
        """Text-only comparison request."""
        return await self.generate(api_key, [{"text": prompt}], COMPARISON_GENERATION_CONFIG)
