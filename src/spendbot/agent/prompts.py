"""Prompt templates for LLM-backed expense extraction.

Three prompts are used:

- :data:`EXTRACT_TEXT_PROMPT` - free text to ``{item, price, currency}``;
  only used when the heuristic parser cannot read a message.
- :data:`TRANSCRIBE_RECEIPT_PROMPT` - verbatim OCR of a receipt photo.
- :data:`EXTRACT_IMAGE_PROMPT` - structured expense plus a confidence score
  for a receipt photo.

All prompts ask for bare JSON; the extractor still strips code fences
because smaller models add them anyway.
"""

from __future__ import annotations

# ── System prompts ────────────────────────────────────────────────────────────

JSON_SYSTEM_PROMPT = """\
You are a JSON parser for an expense tracker that users talk to on WhatsApp. \
Return only valid JSON objects, never code blocks or explanations.\
"""

OCR_SYSTEM_PROMPT = """\
You are an accurate OCR tool. Transcribe all text visible in the image exactly \
as it appears, including prices and totals. Preserve line breaks where possible.\
"""

# ── Text extraction ───────────────────────────────────────────────────────────

EXTRACT_TEXT_PROMPT = """\
Extract expense information from the following message.

Rules:
- item: a short name for what was bought (e.g. "Coffee", "Groceries").
- price: the amount as a number. If the text mentions a total or full amount, \
use that.
- currency: three-letter ISO code if the message names one, otherwise null.
- Preserve the full numeric amount exactly as written (e.g. "2,000" means 2000).

Format: {{"item": "name", "price": number, "currency": "USD" | null}}
If the message does not describe an expense: {{"error": "invalid"}}

Examples:
"Coffee 10 dollar" -> {{"item": "Coffee", "price": 10.00, "currency": "USD"}}
"spent twelve fifty on lunch" -> {{"item": "Lunch", "price": 12.50, "currency": null}}

Message: "{user_message}"\
"""

# ── Receipt images ────────────────────────────────────────────────────────────

TRANSCRIBE_RECEIPT_PROMPT = "Extract and transcribe all text from this image:"

EXTRACT_IMAGE_PROMPT = """\
You extract a single expense from a receipt or price-tag photo.

Rules:
- If a total, subtotal or full amount is present, use THAT as the price and \
ignore individual line items.
- item: a summary description such as "Groceries" or "Dinner", based on the \
receipt content.
- currency: three-letter ISO code if visible, otherwise null.
- confidence: a number between 0 and 1 for how sure you are that the price is \
correct. Use below 0.5 when the price is unreadable or you are guessing.
- The user's caption, if any, is context only: "{caption}"

Return ONLY valid JSON:
{{"item": "name", "price": number, "currency": "USD" | null, "confidence": number}}
If there is no readable expense: {{"error": "invalid", "confidence": 0}}\
"""
