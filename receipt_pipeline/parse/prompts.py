"""Prompt builders for the extraction and comparison requests."""
from datetime import date, datetime, timezone
from typing import Optional, Sequence

from receipt_pipeline.parse.models import LineItem

CATEGORY_VOCABULARY = (
    "food",
    "beverages",
    "clothing",
    "electronics",
    "travel",
    "education",
    "health",
    "entertainment",
    "home",
    "transport",
    "household",
    "personal-care",
    "other",
)

EXTRACTION_GENERATION_CONFIG = {
    "temperature": 0.4,
    "topK": 32,
    "topP": 1,
    "maxOutputTokens": 4096,
    "responseMimeType": "application/json",
}

COMPARISON_GENERATION_CONFIG = {
    "temperature": 0.4,
    "topK": 32,
    "topP": 1,
    "maxOutputTokens": 2048,
}


def build_extraction_prompt(today: Optional[date] = None) -> str:
    """Instruction sent alongside the receipt image."""
    today = today or datetime.now(timezone.utc).date()
    categories = ", ".join(CATEGORY_VOCABULARY)
    return f"""Analyze this receipt image and extract the following information as JSON:
{{
  "comercio": "merchant / store name",
  "fecha": "purchase date in ISO 8601 format (YYYY-MM-DD)",
  "total": number (the amount only, no currency symbol),
  "moneda": "currency code (USD, EUR, MXN, GBP, etc.)",
  "items": [
    {{
      "descripcion": "product or service name",
      "cantidad": number,
      "precio_unitario": number,
      "categories": ["category1", "category2"]
    }}
  ],
  "summary": "short description of the purchase (e.g. 'Weekly groceries', 'Restaurant dinner')"
}}

Important:
- Return ONLY valid JSON, no additional text
- Escape every special character inside strings (quotes, newlines, backslashes)
- Use null for any field you cannot find
- Dates must be YYYY-MM-DD; if the year is missing use {today.year}
- The total is the final amount paid, as a bare number
- Detect the currency from symbols (€, $, £) or codes; if unclear use EUR
- Extract every item you can identify
- Give each item one or more categories from: {categories}
- Items may have several categories (e.g. shampoo could be ["personal-care", "health"])
- The summary is at most 50 characters on a single line
- Be as precise as possible"""


def build_item_comparison_prompt(item: LineItem, currency: str, limit: int) -> str:
    """Per-item (on-demand) comparison request."""
    return f"""You are a price comparison assistant. Find cheaper alternatives for the following product:

Product Name: {item.name}
Current Price: {item.unit_price} {currency}
Quantity: {item.quantity}

Search for this product and find up to {limit} cheaper alternatives from:
1. Online retailers (e.g., Amazon, Walmart, Target, local e-commerce sites)
2. Local shops or supermarkets (if applicable)

Return ONLY valid JSON in this exact format:
{{
  "alternatives": [
    {{
      "storeName": "store name",
      "price": number (in {currency}),
      "savings": number (current price - alternative price),
      "savingsPercent": number (savings / current price * 100),
      "availability": "online" or "local" or "both",
      "location": "address or region (for local shops)" or null,
      "url": "product URL (for online retailers)" or null
    }}
  ]
}}

Important:
- Return ONLY cheaper alternatives (price must be less than {item.unit_price})
- If no cheaper alternatives exist, return {{"alternatives": []}}
- Prices should be realistic and based on current market prices
- Sort results by savings (highest savings first)
- Return ONLY valid JSON, no additional text or explanations"""


def build_batch_comparison_prompt(items: Sequence[LineItem], currency: str, limit: int) -> str:
    """Single request covering every item of a receipt, keyed by item index."""
    lines = "\n".join(
        f"{index}. {item.name} | price: {item.unit_price} {currency} | quantity: {item.quantity}"
        for index, item in enumerate(items)
    )
    return f"""You are a price comparison assistant. For each product below, find up to {limit} cheaper alternatives from online retailers or local shops.

Products (index. name | price | quantity):
{lines}

Return ONLY valid JSON: one object whose keys are the product indexes as strings and whose values are lists of alternatives:
{{
  "0": [
    {{
      "storeName": "store name",
      "price": number (in {currency}),
      "savings": number (current price - alternative price),
      "savingsPercent": number (savings / current price * 100),
      "availability": "online" or "local" or "both",
      "location": "address or region" or null,
      "url": "product URL" or null
    }}
  ]
}}

Important:
- Only include alternatives strictly cheaper than the product's current price
- Use an empty list for products without cheaper alternatives
- Sort each list by savings (highest savings first)
- Return ONLY valid JSON, no additional text or explanations"""
