"""Tests for wire-to-domain mapping and extraction payload normalization."""
from datetime import date, datetime

import pytest
from pydantic import ValidationError

from receipt_pipeline.config import config
from receipt_pipeline.parse.models import (
    ExtractedItem,
    ExtractedReceipt,
    LineItem,
    Receipt,
    ReceiptStatus,
    normalize_categories,
    parse_decimal,
)


def test_receipt_from_row_maps_fields():
    """Snake_case columns, dates and comparison keys are mapped."""
    row = {
        "id": "r-1",
        "user_id": "user-1",
        "status": "completed",
        "storage_path": "receipts/user-1/a.jpg",
        "image_url": "https://cdn.test/a.jpg",
        "merchant": "Market X",
        "date": "2026-10-01",
        "total": 42.5,
        "currency": "EUR",
        "items": [{"name": "Milk", "price": 1.25, "quantity": 2, "categories": ["food"]}],
        "summary": "Groceries",
        "price_comparisons": {
            "0": [
                {
                    "storeName": "Shop",
                    "price": 1.0,
                    "savings": 0.25,
                    "savingsPercent": 20.0,
                    "availability": "local",
                    "location": "Main St",
                    "url": None,
                }
            ]
        },
        "price_comparisons_updated_at": "2026-10-01T10:00:00+00:00",
        "error_message": None,
        "created_at": "2026-10-01T09:59:00+00:00",
        "updated_at": "2026-10-01T10:00:00+00:00",
    }
    receipt = Receipt.from_row(row)

    assert receipt.status is ReceiptStatus.COMPLETED
    assert receipt.date == date(2026, 10, 1)
    assert isinstance(receipt.created_at, datetime)
    assert receipt.items[0].unit_price == 1.25
    assert receipt.items[0].categories == ["food"]
    assert receipt.price_comparisons[0][0].store_name == "Shop"
    assert receipt.price_comparisons[0][0].savings_percent == 20.0
    assert receipt.error_message is None


def test_receipt_from_row_defaults_legacy_status():
    """Rows written before statuses existed read as completed."""
    receipt = Receipt.from_row({"id": 7, "merchant": "Old", "total": 3, "date": "2024-01-02"})
    assert receipt.id == "7"
    assert receipt.status is ReceiptStatus.COMPLETED
    assert receipt.items == []
    assert receipt.price_comparisons is None


def test_line_item_folds_legacy_category():
    item = LineItem.model_validate({"name": "Soap", "price": 2, "quantity": 1, "category": "Household"})
    assert item.categories == ["household"]


def test_line_item_prefers_categories_over_legacy():
    item = LineItem.model_validate({"name": "Soap", "price": 2, "category": "home", "categories": ["health"]})
    assert item.categories == ["health"]


def test_normalize_categories():
    assert normalize_categories([" Food", "food", "", "personal-care", 3]) == ["food", "personal-care"]
    assert normalize_categories(None) == []
    assert normalize_categories("other") == ["other"]


def test_terminal_statuses():
    assert not ReceiptStatus.PROCESSING.is_terminal
    assert ReceiptStatus.COMPLETED.is_terminal
    assert ReceiptStatus.ERROR.is_terminal


def test_completion_fields_mapping():
    """Extraction keys are renamed to the canonical columns."""
    extracted = ExtractedReceipt.model_validate(
        {
            "comercio": "Market X",
            "fecha": "2026-10-01",
            "total": 42.5,
            "moneda": "eur",
            "items": [
                {"descripcion": "Milk", "cantidad": 2, "precio_unitario": 1.25, "categories": ["food"]},
                {"descripcion": "Bread", "cantidad": None, "precio_unitario": 2.0},
            ],
            "summary": "Weekly groceries",
        }
    )
    fields = extracted.completion_fields()

    assert fields["merchant"] == "Market X"
    assert fields["date"] == "2026-10-01"
    assert fields["total"] == 42.5
    assert fields["currency"] == "EUR"
    assert fields["items"] == [
        {"name": "Milk", "price": 1.25, "quantity": 2, "categories": ["food"]},
        {"name": "Bread", "price": 2.0, "quantity": 1, "categories": []},
    ]
    assert fields["summary"] == "Weekly groceries"


def test_completion_fields_defaults():
    """Missing fields fall back to placeholders and the default currency."""
    fields = ExtractedReceipt.model_validate(
        {"comercio": None, "fecha": "not a date", "total": None, "moneda": None, "items": None}
    ).completion_fields(today=date(2026, 10, 18))

    assert fields["merchant"] == "Unknown"
    assert fields["date"] == "2026-10-18"
    assert fields["total"] == 0
    assert fields["currency"] == config.DEFAULT_CURRENCY
    assert fields["items"] == []
    assert fields["summary"] is None


def test_total_with_decimal_comma():
    assert ExtractedReceipt.model_validate({"total": "42,50"}).total == 42.5


def test_total_that_is_not_a_number_is_invalid():
    with pytest.raises(ValidationError):
        ExtractedReceipt.model_validate({"total": "forty two"})


def test_item_amounts_with_decimal_comma_and_symbol():
    """Item amounts written the way receipts print them are still read."""
    item = ExtractedItem.model_validate({"descripcion": "Bread", "cantidad": "2", "precio_unitario": "1,99 €"})

    assert item.precio_unitario == pytest.approx(1.99)
    assert item.cantidad == 2


def test_unreadable_item_amounts_fall_back_to_defaults():
    item = ExtractedItem.model_validate({"descripcion": "Bread", "cantidad": "a few", "precio_unitario": "n/a"})

    assert item.to_line_item().to_row() == {"name": "Bread", "price": 0.0, "quantity": 1, "categories": []}


def test_parse_decimal():
    assert parse_decimal("1,99") == pytest.approx(1.99)
    assert parse_decimal("$12.50") == pytest.approx(12.5)
    assert parse_decimal("1.234,50") == pytest.approx(1234.5)
    assert parse_decimal("1,234.50") == pytest.approx(1234.5)
    assert parse_decimal(3) == 3.0
    assert parse_decimal(True) is None
    assert parse_decimal("free") is None
    assert parse_decimal(None) is None
