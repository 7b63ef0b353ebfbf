#!/usr/bin/env python3
"""
Order Store Abstraction Layer — the document store the notifier depends on.

The notifier owns no persistence.  Order documents, their creation times and
the `notificationSent` bookkeeping all live in an externally-owned store.
AbstractOrderStore is the contract every backend fulfils:

  * subscribe_added()          change feed: one callback per added document
  * is_notification_sent()     point read of the flag
  * mark_notification_sent()   conditional write: flip false → true once
  * scan()                     every document in the collection
  * recent_orders()            newest documents, for the dashboard

Backends:

    # Production (Firestore):
    from firestore_store import FirestoreOrderStore
    set_store(FirestoreOrderStore(db, "orders"))

    # Redis (pub/sub change feed):
    from redis_store import RedisOrderStore
    set_store(RedisOrderStore(url="redis://localhost:6379/0"))

    # Demo / tests:
    set_store(InMemoryOrderStore())
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

log = logging.getLogger("pivokart.store")

NOTIFICATION_SENT    = "notificationSent"
NOTIFICATION_SENT_AT = "notificationSentAt"


# ─── Documents & subscriptions ────────────────────────────────────────────────

@dataclass
class StoreDocument:
    """Store-agnostic view of one order document."""
    id:          str
    data:        dict = field(default_factory=dict)
    create_time: Optional[datetime] = None     # server-assigned, tz-aware

    @property
    def notification_sent(self) -> bool:
        return bool(self.data.get(NOTIFICATION_SENT))

    def to_dict(self) -> dict:
        out = {"id": self.id, **self.data}
        for key, value in out.items():
            if isinstance(value, datetime):
                out[key] = value.isoformat()
        return out


AddedCallback = Callable[[StoreDocument], None]


class Subscription:
    """Handle for a change-feed subscription.  `unsubscribe()` is idempotent."""

    def __init__(self, on_close: Optional[Callable[[], None]] = None):
        self._on_close = on_close
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._on_close:
            self._on_close()


# ─── Abstract Interface ───────────────────────────────────────────────────────

class AbstractOrderStore(ABC):
    """
    Contract that every order-store backend must fulfil.

    Callbacks passed to subscribe_added() may be invoked on a background
    thread (Firestore watch, Redis pub/sub reader).  Callers must hand work
    back to their own event loop.
    """

    collection: str = "orders"

    @abstractmethod
    def subscribe_added(self, callback: AddedCallback) -> Subscription:
        """Invoke `callback` once per document added to the collection."""
        ...

    @abstractmethod
    def is_notification_sent(self, doc_id: str) -> bool:
        """Point read of the document's notificationSent flag."""
        ...

    @abstractmethod
    def mark_notification_sent(self, doc_id: str) -> bool:
        """
        Set notificationSent=true and notificationSentAt=now.

        Conditional: returns True if this call flipped the flag, False if it
        was already set (another handler got there first).
        """
        ...

    @abstractmethod
    def scan(self) -> list[StoreDocument]:
        """Every document in the collection (one full pass)."""
        ...

    @abstractmethod
    def recent_orders(self, limit: int = 10) -> list[dict]:
        """Newest documents first, as plain dicts including `id`."""
        ...

    def close(self) -> None:
        """Release connections.  Default: nothing to release."""


# ─── In-memory Backend ────────────────────────────────────────────────────────

class InMemoryOrderStore(AbstractOrderStore):
    """
    Process-local store for demos and tests.  Thread-safe.

    `add_order()` stamps the creation time (or takes one explicitly) and fires
    subscribers synchronously on the calling thread.
    """

    def __init__(
        self,
        collection: str = "orders",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.collection = collection
        self._clock = clock
        self._lock = threading.RLock()
        self._docs: dict[str, StoreDocument] = {}
        self._subscribers: list[tuple[Subscription, AddedCallback]] = []
        self.mark_calls: list[str] = []

    # ── Producer side ─────────────────────────────────────────────────────────

    def add_order(
        self,
        data: dict,
        doc_id: Optional[str] = None,
        create_time: Optional[datetime] = None,
    ) -> StoreDocument:
        doc = StoreDocument(
            id=doc_id or uuid.uuid4().hex[:20],
            data=copy.deepcopy(data),
            create_time=create_time or self._clock(),
        )
        with self._lock:
            self._docs[doc.id] = doc
            subscribers = [cb for sub, cb in self._subscribers if sub.active]
        for callback in subscribers:
            callback(self._snapshot(doc))
        return doc

    def get(self, doc_id: str) -> Optional[StoreDocument]:
        with self._lock:
            doc = self._docs.get(doc_id)
            return self._snapshot(doc) if doc else None

    @staticmethod
    def _snapshot(doc: StoreDocument) -> StoreDocument:
        return StoreDocument(doc.id, copy.deepcopy(doc.data), doc.create_time)

    # ── AbstractOrderStore ────────────────────────────────────────────────────

    def subscribe_added(self, callback: AddedCallback) -> Subscription:
        sub = Subscription()
        with self._lock:
            self._subscribers.append((sub, callback))
            existing = [self._snapshot(d) for d in self._docs.values()]
        # Mirror Firestore: a new listener first receives every existing
        # document as "added".
        for doc in existing:
            callback(doc)
        return sub

    def is_notification_sent(self, doc_id: str) -> bool:
        with self._lock:
            doc = self._docs.get(doc_id)
            return bool(doc and doc.notification_sent)

    def mark_notification_sent(self, doc_id: str) -> bool:
        with self._lock:
            self.mark_calls.append(doc_id)
            doc = self._docs.get(doc_id)
            if doc is None:
                raise KeyError(f"order document {doc_id!r} not found")
            if doc.notification_sent:
                return False
            doc.data[NOTIFICATION_SENT] = True
            doc.data[NOTIFICATION_SENT_AT] = self._clock()
            return True

    def scan(self) -> list[StoreDocument]:
        with self._lock:
            return [self._snapshot(d) for d in self._docs.values()]

    def recent_orders(self, limit: int = 10) -> list[dict]:
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        with self._lock:
            docs = sorted(
                self._docs.values(),
                key=lambda d: d.create_time or epoch,
                reverse=True,
            )
            return [self._snapshot(d).to_dict() for d in docs[:limit]]


# ─── Store Registry ───────────────────────────────────────────────────────────

_store: Optional[AbstractOrderStore] = None


def get_store() -> Optional[AbstractOrderStore]:
    """Return the active store, or None when no backend is configured."""
    return _store


def set_store(store: Optional[AbstractOrderStore]) -> None:
    """
    Swap the active store at runtime.  The outgoing store is closed.

        from order_store import set_store
        from redis_store import RedisOrderStore
        set_store(RedisOrderStore(url="redis://localhost:6379/0"))
    """
    global _store
    if store is not None and not isinstance(store, AbstractOrderStore):
        raise TypeError(
            f"Store must be an AbstractOrderStore subclass, "
            f"got {type(store).__name__}"
        )
    if _store is not None and _store is not store:
        try:
            _store.close()
        except Exception as exc:
            log.warning("Error closing previous store: %s", exc)
    _store = store
