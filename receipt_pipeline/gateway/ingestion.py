"""Ingestion gateway: upload, create the job, dispatch the worker, hand back the id."""
import logging
import time
import uuid
from typing import Optional

from receipt_pipeline.auth.session import UserSession
from receipt_pipeline.errors import DispatchFailure, NotFound
from receipt_pipeline.fetch.functions import PROCESS_RECEIPT, FunctionInvoker
from receipt_pipeline.gateway.subscriptions import OnUpdate, ReceiptSubscriptions, Unsubscribe
from receipt_pipeline.parse.models import Receipt
from receipt_pipeline.store.images import ImageStorage
from receipt_pipeline.store.receipts import ReceiptStore

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
}


def storage_path_for(user_id: str, content_type: str = "image/jpeg") -> str:
    """Collision-resistant object path scoped to the caller."""
    extension = EXTENSIONS.get(content_type, "jpg")
    file_name = f"receipt_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}.{extension}"
    return f"receipts/{user_id}/{file_name}"


class IngestionGateway:
    """Client-side entry point of the pipeline."""

    def __init__(
        self,
        session: UserSession,
        store: ReceiptStore,
        images: ImageStorage,
        invoker: FunctionInvoker,
        subscriptions: Optional[ReceiptSubscriptions] = None,
    ):
        self.session = session
        self.store = store
        self.images = images
        self.invoker = invoker
        self.subscriptions = subscriptions

    async def submit(
        self,
        image: bytes,
        on_update: Optional[OnUpdate] = None,
        content_type: str = "image/jpeg",
    ) -> str:
        """Upload ``image``, create a ``processing`` receipt and dispatch extraction.

        Returns without waiting for extraction. When ``on_update`` is given the
        subscription is opened before the worker is dispatched, so no change
        event can be missed. A subscription that cannot be opened is logged and
        the worker is dispatched regardless.
        """
        user_id = await self.session.require_user_id()

        storage_path = storage_path_for(user_id, content_type)
        image_url = await self.images.upload(storage_path, image, content_type)

        try:
            record = await self.store.create_processing(user_id, storage_path, image_url)
        except Exception:
            logger.warning(f"Receipt record creation failed; uploaded image orphaned at {storage_path}")
            raise
        receipt_id = str(record["id"])

        if on_update is not None:
            try:
                await self.subscribe(receipt_id, on_update)
            except Exception as e:
                # The job still runs; the caller can poll get_receipt instead
                logger.error(f"Change feed unavailable for receipt {receipt_id}: {e}")

        try:
            await self.invoker.invoke(PROCESS_RECEIPT, receipt_id)
        except DispatchFailure as e:
            logger.error(f"Error invoking {PROCESS_RECEIPT} for receipt {receipt_id}: {e}")
            try:
                await self.store.mark_error(receipt_id, str(e) or "Failed to process receipt")
            except Exception as update_error:
                logger.error(f"Failed to record dispatch failure for receipt {receipt_id}: {update_error}")

        return receipt_id

    async def subscribe(self, receipt_id: str, on_update: OnUpdate) -> Unsubscribe:
        if self.subscriptions is None:
            raise RuntimeError("Change feed is not configured for this gateway")
        return await self.subscriptions.subscribe(receipt_id, on_update)

    async def unsubscribe_all(self) -> None:
        if self.subscriptions is not None:
            await self.subscriptions.unsubscribe_all()

    async def get_receipt(self, receipt_id: str) -> Optional[Receipt]:
        """Fresh read of a receipt, or ``None`` if unknown."""
        try:
            return Receipt.from_row(await self.store.get(receipt_id))
        except NotFound as e:
            logger.warning(f"Error fetching receipt: {e}")
            return None
