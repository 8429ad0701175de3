"""Shared pytest fixtures: in-memory store, storage, invoker and realtime fakes."""
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx
import pytest

from receipt_pipeline.errors import DispatchFailure, NotFound, PersistenceFailure, TransferFailure
from receipt_pipeline.fetch.gemini import GeminiClient

GEMINI_BASE_URL = "https://gemini.test/v1beta"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FakeReceiptStore:
    """Mirrors ReceiptStore, including the conditional status transitions."""

    def __init__(self):
        self.rows: dict[str, dict[str, Any]] = {}
        self.api_keys: dict[str, str] = {}
        self.fail_on: set[str] = set()
        self.comparison_writes: list[dict[str, Any]] = []

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise PersistenceFailure(f"{operation} failed")

    def add(self, **fields: Any) -> dict[str, Any]:
        row = {
            "id": str(uuid.uuid4()),
            "user_id": "user-1",
            "status": "processing",
            "storage_path": "receipts/user-1/receipt.jpg",
            "image_url": "https://cdn.test/receipt.jpg",
            "merchant": "Processing...",
            "date": "2026-10-18",
            "total": 0,
            "currency": None,
            "items": [],
            "summary": None,
            "price_comparisons": None,
            "price_comparisons_updated_at": None,
            "error_message": None,
            "created_at": _now(),
            "updated_at": _now(),
        }
        row.update(fields)
        self.rows[row["id"]] = row
        return dict(row)

    async def get(self, receipt_id: str) -> dict[str, Any]:
        if receipt_id not in self.rows:
            raise NotFound(f"Receipt not found: {receipt_id}")
        return dict(self.rows[receipt_id])

    async def get_user_api_key(self, user_id: Optional[str]) -> Optional[str]:
        return self.api_keys.get(user_id)

    async def create_processing(self, user_id: str, storage_path: str, image_url: Optional[str]) -> dict:
        self._maybe_fail("create_processing")
        return self.add(user_id=user_id, storage_path=storage_path, image_url=image_url)

    async def mark_completed(self, receipt_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail("mark_completed")
        row = self.rows.get(receipt_id)
        if row is None or row["status"] != "processing":
            raise PersistenceFailure(f"Failed to update receipt: {receipt_id} is no longer processing")
        row.update(fields, status="completed", error_message=None, updated_at=_now())
        return dict(row)

    async def mark_error(self, receipt_id: str, message: str) -> bool:
        self._maybe_fail("mark_error")
        row = self.rows.get(receipt_id)
        if row is None or row["status"] != "processing":
            return False
        row.update(status="error", error_message=message, updated_at=_now())
        return True

    async def save_price_comparisons(self, receipt_id: str, comparisons: dict) -> None:
        self._maybe_fail("save_price_comparisons")
        self.comparison_writes.append(comparisons)
        self.rows[receipt_id].update(price_comparisons=comparisons, price_comparisons_updated_at=_now())

    async def test_connection(self) -> bool:
        return True

    async def list_stale_processing(self, cutoff: datetime) -> list[dict[str, Any]]:
        return [
            dict(row)
            for row in self.rows.values()
            if row["status"] == "processing" and datetime.fromisoformat(row["updated_at"]) < cutoff
        ]


class FakeImageStorage:
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.fail_upload = False

    async def upload(self, path: str, data: bytes, content_type: str = "image/jpeg") -> str:
        if self.fail_upload:
            raise TransferFailure("Failed to upload image: bucket unavailable")
        self.objects[path] = data
        return f"https://cdn.test/{path}"

    async def download(self, path: Optional[str]) -> bytes:
        if not path or path not in self.objects:
            raise TransferFailure(f"Failed to download image: {path}")
        return self.objects[path]


class FakeInvoker:
    def __init__(self):
        self.invoked: list[tuple[str, str]] = []
        self.dispatched: list[tuple[str, str]] = []
        self.fail = False
        self.on_invoke: Optional[Callable[[str, str], None]] = None

    async def invoke(self, name: str, receipt_id: str) -> None:
        if self.fail:
            raise DispatchFailure(f"Failed to invoke {name}: connection refused")
        self.invoked.append((name, receipt_id))
        if self.on_invoke is not None:
            self.on_invoke(name, receipt_id)

    def dispatch(self, name: str, receipt_id: str) -> None:
        self.dispatched.append((name, receipt_id))


class FakeChannel:
    def __init__(self, name: str):
        self.name = name
        self.callback = None
        self.filter = None
        self.subscribed = False
        self.unsubscribe_calls = 0

    def on_postgres_changes(self, event, callback, table="*", schema="public", filter=None):
        self.callback = callback
        self.filter = filter
        return self

    async def subscribe(self, callback=None):
        self.subscribed = True
        return self

    async def unsubscribe(self):
        self.unsubscribe_calls += 1
        self.subscribed = False

    def emit(self, record: dict[str, Any]) -> None:
        """Deliver an UPDATE event the way the transport does, even after unsubscribe."""
        self.callback({"data": {"type": "UPDATE", "record": record, "old_record": {}}, "ids": [1]})


class FakeRealtimeClient:
    def __init__(self):
        self.channels: list[FakeChannel] = []

    def channel(self, name: str) -> FakeChannel:
        channel = FakeChannel(name)
        self.channels.append(channel)
        return channel


def gemini_reply(text: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        json={"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}}]},
    )


def make_gemini(handler: Callable[[httpx.Request], httpx.Response]) -> GeminiClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiClient(client=client, model="gemini-test", base_url=GEMINI_BASE_URL)


@pytest.fixture()
def store():
    return FakeReceiptStore()


@pytest.fixture()
def images():
    return FakeImageStorage()


@pytest.fixture()
def invoker():
    return FakeInvoker()


@pytest.fixture()
def realtime():
    return FakeRealtimeClient()
