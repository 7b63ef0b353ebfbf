#!/usr/bin/env python3
"""
Recipient resolver — push tokens and recent orders read from the order store.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from order_store import AbstractOrderStore

log = logging.getLogger("pivokart.recipients")

# Checked in order; the first non-empty token on a document wins.
TOKEN_PATHS: tuple[tuple[str, ...], ...] = (
    ("author", "fcmToken"),
    ("fcmToken",),
    ("customer", "fcmToken"),
    ("user", "fcmToken"),
)


def _lookup(data: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    node: Any = data
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node


def token_for(data: Mapping[str, Any]) -> Optional[str]:
    for path in TOKEN_PATHS:
        value = _lookup(data, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def collect_push_tokens(store: Optional[AbstractOrderStore]) -> set[str]:
    """One full scan of the order collection → deduplicated token set."""
    if store is None:
        log.warning("Order store not configured; no push tokens available")
        return set()

    tokens: set[str] = set()
    docs = store.scan()
    for doc in docs:
        token = token_for(doc.data)
        if token:
            tokens.add(token)
    log.info("Found %d unique FCM token(s) across %d order(s)", len(tokens), len(docs))
    return tokens


def fetch_recent_orders(store: Optional[AbstractOrderStore], limit: int = 10) -> list[dict]:
    if store is None:
        return []
    return store.recent_orders(limit=limit)
