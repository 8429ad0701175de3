"""Invocation of the server-resident worker functions."""
import asyncio
import logging
from typing import Optional

import httpx

from receipt_pipeline.config import config
from receipt_pipeline.errors import DispatchFailure
from receipt_pipeline.parse.redact import redact_string

logger = logging.getLogger(__name__)

PROCESS_RECEIPT = "process-receipt"
COMPARE_PRICES = "compare-prices"


class FunctionInvoker:
    """POSTs ``{"receiptId": ...}`` to a named function.

    ``invoke`` awaits the dispatch only: the function acknowledges as soon as
    the work is scheduled. ``dispatch`` goes one step further and detaches the
    call into its own task, whose failure is logged and never propagated.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or config.FUNCTIONS_URL).rstrip("/")
        self.token = token if token is not None else config.FUNCTIONS_TOKEN
        self.client = client or httpx.AsyncClient(timeout=config.TIMEOUT)
        self._pending: set[asyncio.Task] = set()

    def url_for(self, name: str) -> str:
        return f"{self.base_url}/functions/{name}"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def invoke(self, name: str, receipt_id: str) -> None:
        """Dispatch a function call; raise ``DispatchFailure`` if it could not be delivered."""
        try:
            response = await self.client.post(
                self.url_for(name),
                json={"receiptId": receipt_id},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise DispatchFailure(f"Failed to invoke {name}: {redact_string(str(e))}") from e

        if response.status_code >= 400:
            raise DispatchFailure(
                f"Failed to invoke {name} ({response.status_code}): {redact_string(response.text[:300])}",
                status_code=response.status_code,
            )
        logger.info(f"Invoked {name} for receipt {receipt_id}")

    def dispatch(self, name: str, receipt_id: str) -> asyncio.Task:
        """Fire-and-forget ``invoke``; the returned task never raises."""
        task = asyncio.create_task(self._invoke_logged(name, receipt_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _invoke_logged(self, name: str, receipt_id: str) -> None:
        try:
            await self.invoke(name, receipt_id)
        except Exception as e:
            logger.error(f"Error triggering {name} for receipt {receipt_id}: {e}")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for detached dispatches (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self.client.aclose()
