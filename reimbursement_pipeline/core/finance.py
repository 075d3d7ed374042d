"""
Tax / subtotal / total reconciliation for ledger edits.
"""

import dataclasses
from decimal import Decimal, Context, ROUND_HALF_UP, localcontext

from .models import LineItem, FINANCIAL_FIELDS
from .utils import to_number

CENT = Decimal("0.01")

# Wide enough to hold any finite float quantized to cents
MONEY_CONTEXT = Context(prec=400, rounding=ROUND_HALF_UP)


def to_cents(value) -> Decimal:
    """Coerce any user input to a 2-decimal Decimal ('' / None / garbage -> 0)."""
    if isinstance(value, Decimal) and value.is_finite():
        number = value
    else:
        number = Decimal(repr(to_number(value)))
    with localcontext(MONEY_CONTEXT):
        return number.quantize(CENT)


def format_currency(value) -> str:
    """Format an amount as a fixed 2-decimal string."""
    text = f"{to_cents(value):f}"
    return "0.00" if text == "-0.00" else text


def _present(value) -> bool:
    return value is not None and value != ""


def normalize_financials(subtotal=None, tax=None, amount=None, total_with_tax=None) -> dict:
    """
    Bring stored money values (numbers or strings, possibly missing) into
    ledger form: 2-decimal strings with total_with_tax mirroring amount.

    A missing amount falls back to total_with_tax, then subtotal + tax. A
    missing subtotal is derived as amount - tax.
    """
    tax_c = to_cents(tax)
    with localcontext(MONEY_CONTEXT):
        if _present(amount):
            total = to_cents(amount)
        elif _present(total_with_tax):
            total = to_cents(total_with_tax)
        else:
            total = to_cents(subtotal) + tax_c
        sub = to_cents(subtotal) if _present(subtotal) else total - tax_c

    amount_text = format_currency(total)
    return {
        "subtotal": format_currency(sub),
        "tax": format_currency(tax_c),
        "amount": amount_text,
        "total_with_tax": amount_text,
    }


def reconcile(item: LineItem, field: str, value) -> LineItem:
    """
    Apply one field edit and recompute the dependent financial fields.

    Linkage rule (tax is sticky):
      - subtotal edited: keep tax, amount = subtotal + tax
      - tax edited:      keep subtotal, amount = subtotal + tax
      - amount edited:   keep tax, subtotal = amount - tax

    total_with_tax always mirrors amount, so editing it only re-formats. Every financial field of the
    returned item is a 2-decimal string. Non-financial fields are assigned
    unchanged. The input item is never mutated.
    """
    if field not in FINANCIAL_FIELDS:
        if field == "file" or field not in {f.name for f in dataclasses.fields(item)}:
            raise ValueError(f"Unknown line item field: {field}")
        return dataclasses.replace(item, **{field: value})

    subtotal = to_cents(item.subtotal)
    tax = to_cents(item.tax)
    total = to_cents(item.amount)
    new_value = to_cents(value)

    with localcontext(MONEY_CONTEXT):
        if field == "subtotal":
            subtotal = new_value
            total = subtotal + tax
        elif field == "tax":
            tax = new_value
            total = subtotal + tax
        elif field == "amount":
            total = new_value
            subtotal = total - tax
        # total_with_tax is not an input: it is re-synced from amount below

    amount = format_currency(total)
    return dataclasses.replace(
        item,
        subtotal=format_currency(subtotal),
        tax=format_currency(tax),
        amount=amount,
        total_with_tax=amount,
    )
