#!/usr/bin/env python3
"""
test_order_normalizer.py — Order document → canonical Order.

Covers:
  1. Sparse document → every default filled in, never raises
  2. Nested orderId payload wins over top-level fields
  3. Ravi / Naan end-to-end document
  4. Flat schema aliases (products, total_amount, orderStatus)
  5. Amount coercion (numeric strings, junk, non-finite, zero falls through)
  6. Customer name / phone resolution order
  7. Non-dict input and decode() tagging

Run:
    python3 test_order_normalizer.py
"""

import sys
from datetime import datetime, timezone

from order_normalizer import (
    DEFAULT_CUSTOMER_NAME,
    FlatOrder,
    NestedOrder,
    OrderItem,
    decode,
    normalize,
)

# ─── Helpers ──────────────────────────────────────────────────────────────────

PASS = "\033[32mPASS\033[0m"
FAIL = "\033[31mFAIL\033[0m"

_results: list[tuple[str, str]] = []


def _check(label: str, condition: bool, detail: str = "") -> None:
    status = PASS if condition else FAIL
    _results.append((label, "PASS" if condition else "FAIL"))
    suffix = f"  ({detail})" if detail else ""
    print(f"  [{status}] {label}{suffix}")
    if not condition:
        raise AssertionError(f"FAILED: {label}{suffix}")


# ─── Tests ────────────────────────────────────────────────────────────────────

def test_sparse_document_defaults():
    print("\n[1] Sparse document → defaults")
    order = normalize({}, doc_id="doc-1")
    _check("customer name defaults to Customer", order.customer_name == DEFAULT_CUSTOMER_NAME)
    _check("order id falls back to doc id",      order.order_id == "doc-1")
    _check("phone empty",                        order.customer_phone == "")
    _check("amount 0",                           order.total_amount == 0)
    _check("no items",                           order.items == [])
    _check("status pending",                     order.order_status == "pending")
    _check("created_at is tz-aware",             order.created_at.tzinfo is not None)

    blank = normalize({"customerName": "   ", "author": {"firstName": "", "lastName": None}})
    _check("whitespace / empty names → Customer", blank.customer_name == "Customer",
           blank.customer_name)


def test_nested_amount_wins():
    print("\n[2] Nested orderId payload wins")
    raw = {
        "amount": 99,
        "status": "cancelled",
        "orderId": {"orderId": "ORD-7", "totalAmount": 850, "status": "confirmed"},
    }
    order = normalize(raw, doc_id="doc-2")
    _check("nested totalAmount used",   order.total_amount == 850, str(order.total_amount))
    _check("nested status used",        order.order_status == "confirmed")
    _check("business id from nested",   order.order_id == "ORD-7")

    no_id = normalize({"orderId": {"totalAmount": 1}}, doc_id="doc-3")
    _check("nested without id → doc id", no_id.order_id == "doc-3")

    alt = normalize({"orderId": {"total_amount": "120", "delivery_address": "MG Road"}})
    _check("snake_case aliases read",   alt.total_amount == 120 and alt.delivery_address == "MG Road")


def test_ravi_naan_end_to_end():
    print("\n[3] Ravi / Naan document")
    raw = {
        "orderId": {"totalAmount": 500, "items": [{"name": "Naan", "quantity": 2}]},
        "author": {"name": "Ravi", "phoneNumber": "+911234567890"},
    }
    created = datetime(2026, 10, 19, 6, 30, tzinfo=timezone.utc)
    order = normalize(raw, doc_id="abc", created_at=created)
    _check("customer name Ravi",     order.customer_name == "Ravi", order.customer_name)
    _check("phone from author",      order.customer_phone == "+911234567890")
    _check("amount 500",             order.total_amount == 500)
    _check("items",                  order.items == [OrderItem("Naan", 2)])
    _check("created_at kept",        order.created_at == created)

    d = order.to_dict()
    _check("to_dict camelCase",      d["customerName"] == "Ravi" and d["items"][0]["quantity"] == 2)
    _check("to_dict iso createdAt",  d["createdAt"].startswith("2026-10-19T06:30"))


def test_flat_aliases():
    print("\n[4] Flat schema aliases")
    raw = {
        "orderId": "ORD-42",
        "customerName": "Asha Verma",
        "customerPhone": "+919000000000",
        "total_amount": 300,
        "address": "Tanakpur",
        "orderStatus": "delivered",
        "products": [{"itemName": "Samosa"}, {"name": "Chai", "quantity": "3"}, "Lassi"],
    }
    order = normalize(raw, doc_id="doc-9")
    _check("order id scalar",          order.order_id == "ORD-42")
    _check("first name",               order.first_name == "Asha")
    _check("total_amount alias",       order.total_amount == 300)
    _check("address alias",            order.delivery_address == "Tanakpur")
    _check("orderStatus alias",        order.order_status == "delivered")
    _check("products alias + itemName", [i.name for i in order.items] == ["Samosa", "Chai", "Lassi"])
    _check("quantity default 1 / coerced", [i.quantity for i in order.items] == [1, 3, 1])

    empty_items = normalize({"items": [], "orderItems": [{"name": "Roti"}]})
    _check("empty items falls through to orderItems", [i.name for i in empty_items.items] == ["Roti"])


def test_amount_coercion():
    print("\n[5] Amount coercion")
    _check("numeric string",     normalize({"totalAmount": "850"}).total_amount == 850)
    _check("decimal string",     normalize({"totalAmount": "99.5"}).total_amount == 99.5)
    _check("thousands separator", normalize({"totalAmount": "1,200"}).total_amount == 1200)
    _check("junk string → 0",    normalize({"totalAmount": "abc"}).total_amount == 0)
    _check("nan string → 0",     normalize({"totalAmount": "nan"}).total_amount == 0)
    _check("inf float → 0",      normalize({"totalAmount": float("inf")}).total_amount == 0)
    _check("bool → 0",           normalize({"totalAmount": True}).total_amount == 0)
    _check("dict → 0",           normalize({"totalAmount": {"x": 1}}).total_amount == 0)

    zero_first = {"totalAmount": 0, "total_amount": 50}
    _check("zero falls through (flat)",   normalize(zero_first).total_amount == 50)
    _check("zero falls through (nested)", normalize({"orderId": zero_first}).total_amount == 50)
    _check("zero string falls through",   normalize({"totalAmount": "0", "amount": 75}).total_amount == 75)


def test_name_and_phone_resolution():
    print("\n[6] Name / phone resolution order")
    _check("customerName first",
           normalize({"customerName": "Meera", "author": {"name": "X"}}).customer_name == "Meera")
    _check("author first + last",
           normalize({"author": {"firstName": "Ravi", "lastName": "Kumar", "name": "RK"}}).customer_name
           == "Ravi Kumar")
    _check("first name only",
           normalize({"author": {"firstName": "Ravi"}}).customer_name == "Ravi")
    _check("customerPhone before author.phoneNumber",
           normalize({"customerPhone": "+1", "author": {"phoneNumber": "+2"}}).customer_phone == "+1")

    nested = normalize({
        "orderId": {"customerName": "Inner", "customerPhone": "+91111"},
        "customerName": "Outer",
        "author": {"phoneNumber": "+92222"},
    })
    _check("nested name wins",  nested.customer_name == "Inner")
    _check("nested phone wins", nested.customer_phone == "+91111")

    fallback = normalize({"orderId": {"totalAmount": 5}, "customerName": "Outer"})
    _check("outer name when nested has none", fallback.customer_name == "Outer")


def test_decode_and_garbage_input():
    print("\n[7] decode() and non-dict input")
    _check("scalar orderId → FlatOrder",   isinstance(decode({"orderId": "A"}), FlatOrder))
    _check("mapping orderId → NestedOrder", isinstance(decode({"orderId": {}}), NestedOrder))
    _check("None → FlatOrder",             isinstance(decode(None), FlatOrder))

    order = normalize(None, doc_id="x")
    _check("None input normalizes",        order.order_id == "x" and order.customer_name == "Customer")

    pre = decode({"orderId": {"totalAmount": 10}})
    _check("accepts pre-decoded RawOrder", normalize(pre, doc_id="y").total_amount == 10)


# ─── Runner ───────────────────────────────────────────────────────────────────

def main() -> int:
    print("=" * 60)
    print("  Pivokart — Order Normalizer Tests")
    print("=" * 60)

    tests = [
        test_sparse_document_defaults,
        test_nested_amount_wins,
        test_ravi_naan_end_to_end,
        test_flat_aliases,
        test_amount_coercion,
        test_name_and_phone_resolution,
        test_decode_and_garbage_input,
    ]
    for test in tests:
        try:
            test()
        except AssertionError:
            pass  # already printed

    failed = sum(1 for _, s in _results if s == "FAIL")
    print("\n" + "=" * 60)
    print(f"  Results: {len(_results) - failed} passed, {failed} failed / {len(_results)} total")
    print("=" * 60)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
