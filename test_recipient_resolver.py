#!/usr/bin/env python3
"""
test_recipient_resolver.py — push-token collection and recent orders.

Run:
    python3 test_recipient_resolver.py
"""

import sys
from datetime import datetime, timedelta, timezone

from order_store import InMemoryOrderStore
from recipient_resolver import collect_push_tokens, fetch_recent_orders, token_for

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

def test_token_priority():
    print("\n[1] Token field priority")
    _check("author.fcmToken first",
           token_for({"author": {"fcmToken": "A"}, "fcmToken": "B"}) == "A")
    _check("top-level next",
           token_for({"fcmToken": "B", "customer": {"fcmToken": "C"}}) == "B")
    _check("customer before user",
           token_for({"customer": {"fcmToken": "C"}, "user": {"fcmToken": "D"}}) == "C")
    _check("user last",
           token_for({"user": {"fcmToken": "D"}}) == "D")
    _check("blank skipped, trimmed",
           token_for({"author": {"fcmToken": "   "}, "fcmToken": "  B  "}) == "B")
    _check("non-string ignored",
           token_for({"author": "not-a-dict", "fcmToken": 123, "user": {"fcmToken": "D"}}) == "D")
    _check("none found", token_for({"customerName": "x"}) is None)


def test_collect_dedup():
    print("\n[2] Collect + dedup")
    store = InMemoryOrderStore()
    store.add_order({"author": {"fcmToken": "tok-1"}})
    store.add_order({"fcmToken": "tok-1"})
    store.add_order({"customer": {"fcmToken": "tok-2"}})
    store.add_order({"customerName": "no token"})

    tokens = collect_push_tokens(store)
    _check("set of unique tokens", tokens == {"tok-1", "tok-2"}, str(tokens))
    _check("empty store → empty set", collect_push_tokens(InMemoryOrderStore()) == set())
    _check("no store → empty set",    collect_push_tokens(None) == set())


def test_recent_orders():
    print("\n[3] Recent orders")
    store = InMemoryOrderStore()
    base = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
    for i in range(5):
        store.add_order({"orderId": f"ORD-{i}"}, doc_id=f"d{i}", create_time=base + timedelta(minutes=i))

    recent = fetch_recent_orders(store, limit=3)
    _check("limit respected",  len(recent) == 3)
    _check("newest first",     [o["id"] for o in recent] == ["d4", "d3", "d2"])
    _check("no store → []",    fetch_recent_orders(None) == [])


# ─── Runner ───────────────────────────────────────────────────────────────────

def main() -> int:
    print("=" * 60)
    print("  Pivokart — Recipient Resolver Tests")
    print("=" * 60)
    for test in (test_token_priority, test_collect_dedup, test_recent_orders):
        try:
            test()
        except AssertionError:
            pass

    failed = sum(1 for _, s in _results if s == "FAIL")
    print("\n" + "=" * 60)
    print(f"  Results: {len(_results) - failed} passed, {failed} failed / {len(_results)} total")
    print("=" * 60)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
