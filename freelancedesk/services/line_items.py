"""
Line items for quotes and invoices.

Both document types share one store; an ``ItemKind`` says which item model
and parent column to use. Items may only change while their parent is a
draft, and every change ends with the owning lifecycle recomputing the
parent's totals inside the same unit of work.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from ..db import atomic
from ..errors import InvalidArgument, InvalidState, NotFound
from ..models import InvoiceItem, QuoteItem
from ..money import ONE, ZERO, compute_item_total, quantize_money, to_decimal
from ..schemas import LineItemRequest
from .context import BaseService, ServiceContext

logger = logging.getLogger(__name__)

DRAFT = "draft"


@dataclass(frozen=True)
class ItemKind:
    label: str
    item_model: type
    parent_attr: str


QUOTE_ITEMS = ItemKind("quote", QuoteItem, "quote_id")
INVOICE_ITEMS = ItemKind("invoice", InvoiceItem, "invoice_id")

ITEM_FIELDS = ("description", "quantity", "unit_price", "tax_rate", "discount", "sort_order")
AMOUNT_FIELDS = ("quantity", "unit_price", "tax_rate", "discount")


def apply_item_total(item) -> None:
    """Round the amount fields to their column scale, then total from the rounded values."""
    for field_name in AMOUNT_FIELDS:
        setattr(item, field_name, quantize_money(getattr(item, field_name)))
    item.total = compute_item_total(item.quantity, item.unit_price, item.tax_rate, item.discount)


class LineItemStore(BaseService):
    def __init__(
        self,
        ctx: ServiceContext,
        kind: ItemKind,
        load_parent: Callable[..., object],
        recompute: Callable[[object], None],
    ):
        super().__init__(ctx)
        self.kind = kind
        self._load_parent = load_parent
        self._recompute = recompute

    # ------------------------------------------------------------------
    # Building items (callers guard the parent state)
    # ------------------------------------------------------------------

    def new_item(self, request: LineItemRequest, default_sort_order: int = 0):
        if request.description is None:
            raise InvalidArgument("Item description is required")
        item = self.kind.item_model(
            id=self.ctx.new_id(),
            description=request.description,
            quantity=to_decimal(request.quantity, ONE),
            unit_price=to_decimal(request.unit_price, ZERO),
            tax_rate=to_decimal(request.tax_rate, ZERO),
            discount=to_decimal(request.discount, ZERO),
            sort_order=request.sort_order if request.sort_order is not None else default_sort_order,
        )
        apply_item_total(item)
        return item

    def replace_items(self, parent, requests: Iterable[LineItemRequest]) -> None:
        """Swap the parent's whole item list; request position is the default sort order."""
        new_items = [self.new_item(request, index) for index, request in enumerate(requests)]
        parent.items.clear()
        parent.items.extend(new_items)

    def copy_items(self, source_items, target) -> None:
        for original in source_items:
            item = self.kind.item_model(
                id=self.ctx.new_id(),
                description=original.description,
                quantity=original.quantity,
                unit_price=original.unit_price,
                tax_rate=original.tax_rate,
                discount=original.discount,
                sort_order=original.sort_order,
            )
            apply_item_total(item)
            target.items.append(item)

    # ------------------------------------------------------------------
    # Item operations on draft parents
    # ------------------------------------------------------------------

    def _draft_parent(self, user_id: str, parent_id: str, verb: str):
        parent = self._load_parent(user_id, parent_id, lock=True)
        if parent.status != DRAFT:
            raise InvalidState(f"Cannot {verb} a non-draft {self.kind.label}")
        return parent

    def _owned_item(self, parent, item_id: str):
        item = self.db.get(self.kind.item_model, str(item_id))
        if item is None:
            raise NotFound(f"{self.kind.label.capitalize()} item not found")
        if getattr(item, self.kind.parent_attr) != parent.id:
            raise InvalidArgument(f"{self.kind.label.capitalize()} item does not belong to the specified {self.kind.label}")
        return item

    @atomic
    def add_item(self, user_id: str, parent_id: str, request: LineItemRequest):
        parent = self._draft_parent(user_id, parent_id, "add items to")
        item = self.new_item(request, default_sort_order=len(parent.items))
        parent.items.append(item)
        self._recompute(parent)
        logger.debug("Added item %s to %s %s", item.id, self.kind.label, parent.id)
        return item

    @atomic
    def update_item(self, user_id: str, parent_id: str, item_id: str, request: LineItemRequest):
        parent = self._draft_parent(user_id, parent_id, "modify items in")
        item = self._owned_item(parent, item_id)
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        for field_name in ITEM_FIELDS:
            if field_name in changes:
                setattr(item, field_name, changes[field_name])
        apply_item_total(item)
        self._recompute(parent)
        return item

    @atomic
    def delete_item(self, user_id: str, parent_id: str, item_id: str) -> None:
        parent = self._draft_parent(user_id, parent_id, "delete items from")
        item = self._owned_item(parent, item_id)
        parent.items.remove(item)
        self._recompute(parent)

    @atomic
    def reorder(self, user_id: str, parent_id: str, ordered_item_ids: list[str]) -> list:
        """Assign ``sort_order`` by list position; ids that are not on this parent are skipped."""
        parent = self._draft_parent(user_id, parent_id, "reorder items in")
        by_id = {item.id: item for item in parent.items}
        for position, item_id in enumerate(ordered_item_ids):
            item = by_id.get(str(item_id))
            if item is not None:
                item.sort_order = position
        parent.items.sort(key=lambda item: item.sort_order)
        self._recompute(parent)
        return list(parent.items)

    def list_items(self, user_id: str, parent_id: str) -> list:
        parent = self._load_parent(user_id, parent_id)
        return sorted(parent.items, key=lambda item: item.sort_order)

    def get_item(self, user_id: str, parent_id: str, item_id: str):
        parent = self._load_parent(user_id, parent_id)
        return self._owned_item(parent, item_id)
