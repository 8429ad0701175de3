"""Data models for receipts and the payloads exchanged with the extraction service."""
import re
from datetime import date as date_type, datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from receipt_pipeline.config import config


class ReceiptStatus(str, Enum):
    """Lifecycle of a receipt job. ``completed`` and ``error`` are terminal."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not ReceiptStatus.PROCESSING


Availability = Literal["online", "local", "both"]


def normalize_categories(values: Any) -> list[str]:
    """Lower-case, strip and de-duplicate category tags, keeping order."""
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    tags: list[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        tag = value.strip().lower()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


_NUMBER_NOISE = re.compile(r"[^\d,.\-]")


def parse_decimal(value: Any) -> Optional[float]:
    """Read a model-supplied amount such as ``"1,99"``, ``"12.50 €"`` or ``"1.234,50"``.

    Returns ``None`` when nothing numeric can be read.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None

    cleaned = _NUMBER_NOISE.sub("", value)
    if "," in cleaned and "." in cleaned:
        # Whichever separator comes last is the decimal one
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None


class LineItem(BaseModel):
    """One purchased line on a receipt."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    unit_price: float = Field(default=0.0, alias="price")
    quantity: float = 1
    categories: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _fold_legacy_category(cls, data: Any) -> Any:
        # Older rows carry a single "category" string
        if isinstance(data, dict) and "category" in data:
            data = dict(data)
            legacy = data.pop("category")
            if not data.get("categories") and legacy:
                data["categories"] = [legacy]
        return data

    @field_validator("categories", mode="before")
    @classmethod
    def _normalize_categories(cls, value: Any) -> list[str]:
        return normalize_categories(value)

    @field_validator("unit_price", "quantity", mode="before")
    @classmethod
    def _none_to_default(cls, value: Any, info) -> Any:
        if value is None:
            return 0.0 if info.field_name == "unit_price" else 1
        return value

    def to_row(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "price": self.unit_price,
            "quantity": self.quantity,
            "categories": list(self.categories),
        }


class PriceComparison(BaseModel):
    """A cheaper alternative for a line item."""

    model_config = ConfigDict(populate_by_name=True)

    store_name: str = Field(alias="storeName")
    price: float
    savings: float
    savings_percent: float = Field(alias="savingsPercent")
    availability: Availability = "online"
    location: Optional[str] = None
    url: Optional[str] = None

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class Receipt(BaseModel):
    """Domain view of a receipt job record."""

    id: str
    user_id: Optional[str] = None
    status: ReceiptStatus = ReceiptStatus.COMPLETED
    storage_path: Optional[str] = None
    image_url: Optional[str] = None
    merchant: Optional[str] = None
    date: Optional[date_type] = None
    total: Optional[float] = None
    currency: Optional[str] = None
    items: list[LineItem] = Field(default_factory=list)
    summary: Optional[str] = None
    price_comparisons: Optional[dict[int, list[PriceComparison]]] = None
    price_comparisons_updated_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Receipt":
        """Map a wire row (snake_case table columns) to the domain model."""
        return cls(
            id=str(row["id"]),
            user_id=row.get("user_id"),
            status=row.get("status") or ReceiptStatus.COMPLETED,
            storage_path=row.get("storage_path") or None,
            image_url=row.get("image_url") or None,
            merchant=row.get("merchant"),
            date=row.get("date") or None,
            total=row.get("total"),
            currency=row.get("currency") or None,
            items=row.get("items") or [],
            summary=row.get("summary") or None,
            price_comparisons=row.get("price_comparisons") or None,
            price_comparisons_updated_at=row.get("price_comparisons_updated_at") or None,
            error_message=row.get("error_message") or None,
            created_at=row.get("created_at") or None,
            updated_at=row.get("updated_at") or None,
        )


class ExtractedItem(BaseModel):
    """Item as returned by the extraction prompt (field names fixed by the prompt)."""

    descripcion: Optional[str] = None
    cantidad: Optional[float] = None
    precio_unitario: Optional[float] = None
    categories: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _fold_legacy_category(cls, data: Any) -> Any:
        if isinstance(data, dict) and "category" in data and not data.get("categories"):
            data = dict(data)
            data["categories"] = [data.pop("category")]
        return data

    @field_validator("cantidad", "precio_unitario", mode="before")
    @classmethod
    def _lenient_number(cls, value: Any) -> Optional[float]:
        return parse_decimal(value)

    @field_validator("categories", mode="before")
    @classmethod
    def _normalize_categories(cls, value: Any) -> list[str]:
        return normalize_categories(value)

    def to_line_item(self) -> LineItem:
        return LineItem(
            name=self.descripcion or "",
            unit_price=self.precio_unitario if self.precio_unitario is not None else 0.0,
            quantity=self.cantidad if self.cantidad is not None else 1,
            categories=self.categories,
        )


class ExtractedReceipt(BaseModel):
    """Top-level extraction payload."""

    comercio: Optional[str] = None
    fecha: Optional[str] = None
    total: Optional[float] = None
    moneda: Optional[str] = None
    items: list[ExtractedItem] = Field(default_factory=list)
    summary: Optional[str] = None

    @field_validator("items", mode="before")
    @classmethod
    def _null_items(cls, value: Any) -> Any:
        return value or []

    @field_validator("fecha", mode="before")
    @classmethod
    def _iso_date_or_none(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str) or not value.strip():
            return None
        try:
            return date_type.fromisoformat(value.strip()[:10]).isoformat()
        except ValueError:
            return None

    @field_validator("total", mode="before")
    @classmethod
    def _decimal_comma(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not value.strip():
                return None
            parsed = parse_decimal(value)
            return parsed if parsed is not None else value
        return value

    def completion_fields(self, today: Optional[date_type] = None) -> dict[str, Any]:
        """Canonical column values written when the job completes."""
        today = today or datetime.now(timezone.utc).date()
        return {
            "merchant": (self.comercio or "").strip() or "Unknown",
            "date": self.fecha or today.isoformat(),
            "total": self.total or 0,
            "currency": (self.moneda or "").strip().upper() or config.DEFAULT_CURRENCY,
            "items": [item.to_line_item().to_row() for item in self.items],
            "summary": self.summary or None,
        }


class ProcessResult(BaseModel):
    """Outcome reported by the extraction worker to its caller."""

    receipt_id: str
    status: Literal["completed", "skipped"]
