#!/usr/bin/env python3
"""
Order Normalizer — maps an arbitrarily-shaped order document to one
canonical `Order`.

Upstream apps write orders in two incompatible schemas:

  Flat     {orderId: "ORD-1", customerName, totalAmount, items, ...}
  Nested   {orderId: {totalAmount, items, status, ...}, author: {...}}

`decode()` resolves the shape once into a tagged union
(`RawOrder = FlatOrder | NestedOrder`); `normalize()` then builds the Order
from whichever variant it got.  Normalization is total: every document,
however sparse, produces a fully-populated Order with defaults substituted.
It never raises.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

DEFAULT_CUSTOMER_NAME = "Customer"
DEFAULT_STATUS        = "pending"
DEFAULT_ITEM_NAME     = "Item"

_AMOUNT_KEYS   = ("totalAmount", "total_amount", "amount")
_ADDRESS_KEYS  = ("deliveryAddress", "delivery_address", "address")
_STATUS_KEYS   = ("status", "orderStatus")
_NESTED_ITEMS  = ("items", "orderItems")
_FLAT_ITEMS    = ("items", "orderItems", "products")


# ─── Canonical record ─────────────────────────────────────────────────────────

@dataclass
class OrderItem:
    name:     str = DEFAULT_ITEM_NAME
    quantity: int = 1

    def to_dict(self) -> dict:
        return {"name": self.name, "quantity": self.quantity}


@dataclass
class Order:
    id:               str
    order_id:         str
    customer_name:    str = DEFAULT_CUSTOMER_NAME
    customer_phone:   str = ""
    total_amount:     Union[int, float] = 0
    delivery_address: str = ""
    items:            list[OrderItem] = field(default_factory=list)
    order_status:     str = DEFAULT_STATUS
    created_at:       datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def first_name(self) -> str:
        return self.customer_name.split(" ")[0] if self.customer_name else DEFAULT_CUSTOMER_NAME

    def to_dict(self) -> dict:
        return {
            "id":              self.id,
            "orderId":         self.order_id,
            "customerName":    self.customer_name,
            "customerPhone":   self.customer_phone,
            "totalAmount":     self.total_amount,
            "deliveryAddress": self.delivery_address,
            "items":           [i.to_dict() for i in self.items],
            "orderStatus":     self.order_status,
            "createdAt":       self.created_at.isoformat(),
        }


# ─── Raw shapes ───────────────────────────────────────────────────────────────

@dataclass
class FlatOrder:
    """orderId is a scalar identifier (or absent); details live at top level."""
    fields: Mapping[str, Any]


@dataclass
class NestedOrder:
    """orderId is itself the order-details payload."""
    outer:   Mapping[str, Any]
    details: Mapping[str, Any]


RawOrder = Union[FlatOrder, NestedOrder]


def decode(raw_doc: Optional[Mapping[str, Any]]) -> RawOrder:
    doc = raw_doc if isinstance(raw_doc, Mapping) else {}
    order_id = doc.get("orderId")
    if isinstance(order_id, Mapping):
        return NestedOrder(outer=doc, details=order_id)
    return FlatOrder(fields=doc)


# ─── Field helpers ────────────────────────────────────────────────────────────

def _missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def _first(source: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = source.get(key)
        if not _missing(value):
            return value
    return None


def _sub(source: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = source.get(key)
    return value if isinstance(value, Mapping) else {}


def _text(value: Any, default: str = "") -> str:
    if _missing(value):
        return default
    return str(value).strip()


def _number(value: Any) -> Union[int, float]:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else 0
    if isinstance(value, str):
        try:
            parsed = float(value.strip().replace(",", ""))
        except ValueError:
            return 0
        if not math.isfinite(parsed):
            return 0
        return int(parsed) if parsed.is_integer() else parsed
    return 0


def _amount(source: Mapping[str, Any]) -> Union[int, float]:
    """First alias with a non-zero amount; a zero never hides a later alias."""
    for key in _AMOUNT_KEYS:
        amount = _number(source.get(key))
        if amount:
            return amount
    return 0


def _quantity(value: Any) -> int:
    qty = _number(value)
    return int(qty) if qty else 1


def _items(value: Any) -> list[OrderItem]:
    if not isinstance(value, (list, tuple)):
        return []
    items = []
    for entry in value:
        if isinstance(entry, Mapping):
            name = _text(entry.get("name")) or _text(entry.get("itemName")) or DEFAULT_ITEM_NAME
            items.append(OrderItem(name=name, quantity=_quantity(entry.get("quantity"))))
        elif not _missing(entry):
            items.append(OrderItem(name=str(entry)))
    return items


def customer_name(source: Mapping[str, Any]) -> Optional[str]:
    """customerName → author first+last → author.name.  None if nothing found."""
    explicit = _text(source.get("customerName"))
    if explicit:
        return explicit
    author = _sub(source, "author")
    parts = [_text(author.get("firstName")), _text(author.get("lastName"))]
    joined = " ".join(p for p in parts if p).strip()
    if joined:
        return joined
    return _text(author.get("name")) or None


def customer_phone(source: Mapping[str, Any]) -> Optional[str]:
    return (
        _text(source.get("customerPhone"))
        or _text(_sub(source, "author").get("phoneNumber"))
        or None
    )


# ─── Normalize ────────────────────────────────────────────────────────────────

def normalize(
    raw_doc: Union[Mapping[str, Any], RawOrder, None],
    doc_id: str = "",
    created_at: Optional[datetime] = None,
) -> Order:
    """
    Build the canonical Order for one store document.

    `raw_doc` may be the document dict or an already-decoded RawOrder.
    `doc_id` is the store-assigned id; `created_at` the store creation time
    (falls back to now, UTC).
    """
    raw = raw_doc if isinstance(raw_doc, (FlatOrder, NestedOrder)) else decode(raw_doc)
    created = created_at or datetime.now(timezone.utc)

    if isinstance(raw, NestedOrder):
        outer, details = raw.outer, raw.details
        business_id = _text(details.get("orderId")) or _text(details.get("id")) or doc_id
        return Order(
            id               = doc_id,
            order_id         = business_id,
            customer_name    = customer_name(details) or customer_name(outer) or DEFAULT_CUSTOMER_NAME,
            customer_phone   = customer_phone(details) or customer_phone(outer) or "",
            total_amount     = _amount(details),
            delivery_address = _text(_first(details, _ADDRESS_KEYS)),
            items            = _items(_first(details, _NESTED_ITEMS)),
            order_status     = _text(_first(details, _STATUS_KEYS), DEFAULT_STATUS),
            created_at       = created,
        )

    fields = raw.fields
    return Order(
        id               = doc_id,
        order_id         = _text(fields.get("orderId")) or doc_id,
        customer_name    = customer_name(fields) or DEFAULT_CUSTOMER_NAME,
        customer_phone   = customer_phone(fields) or "",
        total_amount     = _amount(fields),
        delivery_address = _text(_first(fields, _ADDRESS_KEYS)),
        items            = _items(_first(fields, _FLAT_ITEMS)),
        order_status     = _text(_first(fields, _STATUS_KEYS), DEFAULT_STATUS),
        created_at       = created,
    )
