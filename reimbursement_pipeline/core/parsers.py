"""
Parsers turning OCR field maps into ledger line items.
"""

import json
from typing import Any, Dict, Optional

from .finance import format_currency
from .models import LineItem, UploadedFile
from .utils import to_number, today

# The OCR service may answer with one-letter keys to save tokens
SHORT_KEYS = {
    "date": "d",
    "amount": "t",
    "tax": "x",
    "description": "s",
    "category": "c",
    "invoiceNumber": "n",
}
LONG_KEYS = {short: long for long, short in SHORT_KEYS.items()}


def expand_short_keys(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Rewrite short keys to their long form. A long key wins over its alias."""
    fields = {LONG_KEYS[k]: v for k, v in raw.items() if k in LONG_KEYS and v is not None}
    fields.update({k: v for k, v in raw.items() if k not in LONG_KEYS and v is not None})
    return fields


def _text(fields: Dict[str, Any], key: str) -> str:
    value = fields.get(key)
    return str(value).strip() if value not in (None, "") else ""


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Pull the JSON object out of an OCR/LLM response.

    Handles markdown code fences and prose around the object.
    """
    text = text.strip()
    if text.startswith("```"):
        lines = [ln for ln in text.splitlines() if not ln.startswith("```")]
        text = "\n".join(lines)

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise ValueError("No JSON object found in response")
    result = json.loads(text[start:end + 1])
    if not isinstance(result, dict):
        raise ValueError("OCR response is not a JSON object")
    return result


def map_ocr_fields(raw: Dict[str, Any], source: UploadedFile, is_pdf: bool,
                   preview_url: Optional[str], info: Optional[Dict[str, str]] = None,
                   file_hash: Optional[str] = None) -> LineItem:
    """
    Build a line item from a raw OCR field map (long or short keys).

    Missing fields get their type default. When the service omits the
    subtotal it is derived as amount - tax.
    """
    info = info or {}
    fields = expand_short_keys(raw)
    amount = to_number(fields.get("amount"))
    tax = to_number(fields.get("tax"))
    subtotal = to_number(fields.get("subtotal")) or (amount - tax)

    return LineItem(
        file=source,
        is_pdf=is_pdf,
        file_hash=file_hash,
        preview_url=preview_url or source.preview_reference(),
        date=_text(fields, "date"),
        category=_text(fields, "category"),
        description=_text(fields, "description"),
        amount=format_currency(amount),
        tax=format_currency(tax),
        subtotal=format_currency(subtotal),
        total_with_tax=format_currency(amount),
        item_name=_text(fields, "itemName"),
        specification=_text(fields, "specification"),
        unit=_text(fields, "unit"),
        quantity=to_number(fields.get("quantity")),
        unit_price=to_number(fields.get("unitPrice")),
        tax_rate=_text(fields, "taxRate"),
        invoice_number=_text(fields, "invoiceNumber"),
        buyer_name=_text(fields, "buyerName"),
        seller_name=_text(fields, "sellerName"),
        remarks=_text(fields, "remarks"),
        reimburser=info.get("reimburser") or "",
        project=info.get("project") or "",
    )


def create_failed_item(source: UploadedFile, is_pdf: bool, error: Any,
                       info: Optional[Dict[str, str]] = None,
                       preview_url: Optional[str] = None) -> LineItem:
    """Placeholder row for an upload that could not be recognized."""
    info = info or {}
    message = str(error) or error.__class__.__name__
    try:
        preview = preview_url or source.preview_reference()
    except Exception:
        preview = None
    return LineItem(
        file=source,
        is_pdf=is_pdf,
        preview_url=preview,
        date=today(),
        description=f"Recognition failed: {source.name} ({message})",
        reimburser=info.get("reimburser") or "",
        project=info.get("project") or "",
    )
