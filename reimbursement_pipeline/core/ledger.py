"""
The in-memory reimbursement ledger.

Only the orchestrating thread mutates a Ledger. Every field edit goes
through reconcile(), which returns a new item.
"""

import dataclasses
from decimal import Decimal, localcontext
from typing import Any, Dict, Iterable, List, Optional

from .finance import MONEY_CONTEXT, reconcile, to_cents
from .models import LineItem, IMAGE_SLOTS
from .utils import MAX_ATTACHMENTS, today


def create_blank_item(info: Optional[Dict[str, str]] = None) -> LineItem:
    """Template row for manual entry."""
    info = info or {}
    return LineItem(
        date=today(),
        quantity=1,
        reimburser=info.get("reimburser") or "",
        project=info.get("project") or "",
    )


def add_image_reference(item: LineItem, slot: str, reference: str) -> LineItem:
    """
    Add an image reference to one of the item's image slots.

    An empty slot takes a single reference; further references turn it into
    a list capped at MAX_ATTACHMENTS. ``attachments`` is always a list.
    """
    if slot not in IMAGE_SLOTS:
        raise ValueError(f"Unknown image slot: {slot}")

    current = getattr(item, slot)
    if slot == "attachments" or isinstance(current, list):
        refs = list(current or [])
    elif current:
        refs = [current]
    else:
        return dataclasses.replace(item, **{slot: reference})

    if len(refs) >= MAX_ATTACHMENTS:
        print(f"[WARN] {slot} already holds {MAX_ATTACHMENTS} images; ignoring new one")
        return item
    refs.append(reference)
    return dataclasses.replace(item, **{slot: refs})


class Ledger:
    """Ordered list of line items with reconciliation on every edit."""

    def __init__(self, items: Optional[Iterable[LineItem]] = None,
                 info: Optional[Dict[str, str]] = None):
        self.items: List[LineItem] = list(items or [])
        self.info: Dict[str, str] = dict(info or {})

    def __len__(self):
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    def _index(self, item_id: int) -> int:
        for i, item in enumerate(self.items):
            if item.id == item_id:
                return i
        raise KeyError(f"No line item with id {item_id}")

    def get(self, item_id: int) -> LineItem:
        return self.items[self._index(item_id)]

    def add(self, item: LineItem) -> LineItem:
        self.items.append(item)
        return item

    def add_blank(self) -> LineItem:
        return self.add(create_blank_item(self.info))

    def extend(self, items: Iterable[Optional[LineItem]]) -> int:
        """Append batch results, skipping cancelled (None) entries."""
        added = 0
        for item in items:
            if item is not None:
                self.items.append(item)
                added += 1
        return added

    def remove(self, item_id: int) -> LineItem:
        return self.items.pop(self._index(item_id))

    def update(self, item_id: int, field: str, value: Any) -> LineItem:
        index = self._index(item_id)
        self.items[index] = reconcile(self.items[index], field, value)
        return self.items[index]

    def attach_image(self, item_id: int, slot: str, reference: str) -> LineItem:
        index = self._index(item_id)
        self.items[index] = add_image_reference(self.items[index], slot, reference)
        return self.items[index]

    def total_amount(self) -> Decimal:
        with localcontext(MONEY_CONTEXT):
            return sum((to_cents(item.amount) for item in self.items), Decimal("0.00"))

    def to_snapshot(self) -> Dict[str, Any]:
        return {"items": [item.to_dict() for item in self.items], "info": dict(self.info)}

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "Ledger":
        items = [LineItem.from_dict(d) for d in snapshot.get("items") or []]
        return cls(items, snapshot.get("info"))
