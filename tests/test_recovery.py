"""Tests for JSON recovery from model output."""
import json

import pytest

from receipt_pipeline.errors import MalformedOutput
from receipt_pipeline.parse.recovery import clean_json_text, error_context, recover_json, strip_code_fence

RECEIPT = {
    "comercio": "Market X",
    "fecha": "2026-10-01",
    "total": 42.5,
    "moneda": "EUR",
    "items": [{"descripcion": "Milk", "cantidad": 2, "precio_unitario": 1.25, "categories": ["food"]}],
    "summary": "Weekly groceries",
}


def test_plain_json_unchanged():
    """Clean JSON parses as-is."""
    assert recover_json(json.dumps(RECEIPT)) == RECEIPT


def test_fenced_with_language_tag_and_trailing_commas():
    """Fence plus trailing commas yields the same value as the clean JSON."""
    text = """```json
{
  "comercio": "Market X",
  "fecha": "2026-10-01",
  "total": 42.5,
  "moneda": "EUR",
  "items": [
    {"descripcion": "Milk", "cantidad": 2, "precio_unitario": 1.25, "categories": ["food",],},
  ],
  "summary": "Weekly groceries",
}
```"""
    assert recover_json(text) == RECEIPT


def test_fence_without_language_tag():
    """Bare ``` fences are stripped too."""
    text = "```\n" + json.dumps(RECEIPT) + "\n```"
    assert recover_json(text) == RECEIPT


def test_surrounding_prose_is_discarded():
    """First { to last } is kept when the model adds commentary."""
    text = "Here is the data you asked for:\n" + json.dumps(RECEIPT) + "\nLet me know if you need more."
    assert recover_json(text) == RECEIPT


def test_whitespace_is_trimmed():
    assert recover_json("\n\n   " + json.dumps(RECEIPT) + "   \n") == RECEIPT


def test_strip_code_fence_leaves_unfenced_text():
    assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'


def test_clean_json_text_is_total():
    """Cleaning never raises, whatever the input."""
    assert clean_json_text("") == ""
    assert clean_json_text("no json here") == "no json here"
    assert clean_json_text('{"a": [1, 2,]}') == '{"a": [1, 2]}'


def test_truncated_output_reports_context():
    """A truncated response fails with length and neighborhood of the error."""
    text = '{"comercio": "Market X", "items": [{"descripcion": "Milk", "cantidad": 2'
    with pytest.raises(MalformedOutput) as exc_info:
        recover_json(text)
    error = exc_info.value
    assert error.length == len(text)
    assert "Response length" in str(error)


def test_unescaped_quote_fails_without_repair():
    """Only the fixed normalizations are applied; anything else is an error."""
    with pytest.raises(MalformedOutput):
        recover_json('{"comercio": "Joe"s Diner", "total": 3}')


def test_non_object_is_rejected():
    with pytest.raises(MalformedOutput):
        recover_json("[1, 2, 3]")


def test_empty_output_is_rejected():
    with pytest.raises(MalformedOutput):
        recover_json("   ")


def test_error_context_window():
    text = "x" * 300
    assert error_context(text, 150, radius=10) == "x" * 20
    assert error_context(text, None) is None
    assert error_context("abc", 1, radius=100) == "abc"
