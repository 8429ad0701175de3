"""Change-feed subscriptions, one per receipt id.

The registry maps receipt id -> live subscription. Subscribing again for an
id replaces the previous subscription (last write wins); unsubscribing a
handle that is no longer current, or twice, is a no-op. A closed
subscription drops any event still in flight from the transport.
"""
import asyncio
import functools
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from receipt_pipeline.config import config
from receipt_pipeline.parse.models import Receipt

logger = logging.getLogger(__name__)

OnUpdate = Callable[[Receipt], Any]
Unsubscribe = Callable[[], Awaitable[None]]


def extract_record(payload: Any) -> Optional[dict[str, Any]]:
    """Pull the new row image out of a postgres_changes payload."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    record = data.get("record") or data.get("new")
    return record if isinstance(record, dict) else None


class _Subscription:
    """A channel bound to one receipt id and one callback."""

    def __init__(self, receipt_id: str, channel: Any, on_update: OnUpdate):
        self.receipt_id = receipt_id
        self.channel = channel
        self.on_update = on_update
        self.active = True

    async def close(self) -> None:
        if not self.active:
            return
        self.active = False
        try:
            await self.channel.unsubscribe()
        except Exception as e:
            logger.warning(f"Error closing subscription for receipt {self.receipt_id}: {e}")


class ReceiptSubscriptions:
    """Keyed registry of receipt change-feed subscriptions."""

    def __init__(self, client: Any, table: Optional[str] = None, schema: str = "public"):
        self.client = client
        self.table = table or config.RECEIPTS_TABLE
        self.schema = schema
        self._subscriptions: dict[str, _Subscription] = {}
        self._pending: set[asyncio.Future] = set()

    def __len__(self) -> int:
        return len(self._subscriptions)

    @property
    def active_ids(self) -> list[str]:
        return list(self._subscriptions)

    async def subscribe(self, receipt_id: str, on_update: OnUpdate) -> Unsubscribe:
        """Open the subscription for ``receipt_id``, replacing any previous one."""
        channel = self.client.channel(f"receipt-{receipt_id}")
        subscription = _Subscription(receipt_id, channel, on_update)
        channel.on_postgres_changes(
            event="UPDATE",
            schema=self.schema,
            table=self.table,
            filter=f"id=eq.{receipt_id}",
            callback=lambda payload: self._deliver(subscription, payload),
        )

        # Swap in before any await so a racing subscribe/unsubscribe sees it
        previous = self._subscriptions.get(receipt_id)
        self._subscriptions[receipt_id] = subscription
        if previous is not None:
            await previous.close()

        try:
            await channel.subscribe()
        except Exception:
            await self._remove(subscription)
            raise
        logger.debug(f"Subscribed to receipt {receipt_id}")

        async def unsubscribe() -> None:
            await self._remove(subscription)

        return unsubscribe

    async def unsubscribe(self, receipt_id: str) -> None:
        """Close the subscription for ``receipt_id`` if there is one."""
        subscription = self._subscriptions.pop(receipt_id, None)
        if subscription is not None:
            await subscription.close()

    async def unsubscribe_all(self) -> None:
        """Close every subscription; safe with none open."""
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            await subscription.close()
        if subscriptions:
            logger.debug(f"Closed {len(subscriptions)} receipt subscriptions")

    async def drain(self) -> None:
        """Wait for update callbacks still running."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _remove(self, subscription: _Subscription) -> None:
        if self._subscriptions.get(subscription.receipt_id) is subscription:
            del self._subscriptions[subscription.receipt_id]
        await subscription.close()

    def _deliver(self, subscription: _Subscription, payload: Any) -> None:
        if not subscription.active:
            return
        record = extract_record(payload)
        if record is None or str(record.get("id")) != subscription.receipt_id:
            return
        try:
            receipt = Receipt.from_row(record)
        except (ValidationError, KeyError) as e:
            logger.warning(f"Dropping unreadable change event for receipt {subscription.receipt_id}: {e}")
            return
        try:
            result = subscription.on_update(receipt)
        except Exception as e:
            logger.error(f"Update callback failed for receipt {subscription.receipt_id}: {e}", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(functools.partial(self._callback_done, subscription.receipt_id))

    def _callback_done(self, receipt_id: str, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Update callback failed for receipt {receipt_id}: {error}", exc_info=error)
