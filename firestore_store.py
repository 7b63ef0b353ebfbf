#!/usr/bin/env python3
"""
Firestore backend for AbstractOrderStore, plus Firebase Admin bootstrap.

Credentials come from Settings (FIREBASE_PROJECT_ID / FIREBASE_CLIENT_EMAIL /
FIREBASE_PRIVATE_KEY, or a GOOGLE_APPLICATION_CREDENTIALS service-account
file).  When neither is present the notifier runs in demo mode: no store, no
FCM, and every Firebase-backed call degrades to a "not configured" result.

Change feed: `collection.on_snapshot()` runs its callback on a gRPC watch
thread.  The first snapshot delivers every existing document as ADDED; the
listener's creation-time filter is what keeps that backlog quiet.
"""

from __future__ import annotations

import logging
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore

from config import Settings
from order_store import (
    NOTIFICATION_SENT,
    NOTIFICATION_SENT_AT,
    AbstractOrderStore,
    AddedCallback,
    StoreDocument,
    Subscription,
)

log = logging.getLogger("pivokart.firestore")

_TOKEN_URI = "https://oauth2.googleapis.com/token"


# ─── Firebase Admin bootstrap ─────────────────────────────────────────────────

def firebase_ready() -> bool:
    """True once a default Firebase app exists (Firestore + FCM usable)."""
    try:
        firebase_admin.get_app()
        return True
    except ValueError:
        return False


def initialize_firebase(settings: Settings) -> bool:
    """
    Initialise the default Firebase app.  Returns False (demo mode) when no
    credentials are configured or the credentials are rejected.
    """
    if firebase_ready():
        log.info("Firebase Admin SDK already initialised")
        return True

    if not settings.firebase_configured:
        log.warning("Firebase environment variables not configured; running in demo mode")
        return False

    try:
        if settings.firebase_project_id and settings.firebase_private_key:
            cred = credentials.Certificate({
                "type":         "service_account",
                "project_id":   settings.firebase_project_id,
                "private_key":  settings.firebase_private_key,
                "client_email": settings.firebase_client_email,
                "token_uri":    _TOKEN_URI,
            })
        else:
            cred = credentials.Certificate(settings.google_credentials_path)
        firebase_admin.initialize_app(cred)
    except (ValueError, OSError) as exc:
        log.error("Error initialising Firebase Admin SDK: %s", exc)
        return False

    log.info("Firebase Admin SDK initialised (project=%s)", settings.firebase_project_id or "from file")
    return True


# ─── Firestore backend ────────────────────────────────────────────────────────

@firestore.transactional
def _flip_flag(transaction, ref) -> bool:
    snapshot = ref.get(transaction=transaction)
    if not snapshot.exists:
        raise KeyError(f"order document {ref.id!r} not found")
    if (snapshot.to_dict() or {}).get(NOTIFICATION_SENT):
        return False
    transaction.update(ref, {
        NOTIFICATION_SENT:    True,
        NOTIFICATION_SENT_AT: firestore.SERVER_TIMESTAMP,
    })
    return True


class FirestoreOrderStore(AbstractOrderStore):

    def __init__(self, client=None, collection: str = "orders"):
        self.db = client or firestore.client()
        self.collection = collection
        self._subscription: Optional[Subscription] = None

    def _col(self):
        return self.db.collection(self.collection)

    @staticmethod
    def _document(snapshot) -> StoreDocument:
        return StoreDocument(
            id=snapshot.id,
            data=snapshot.to_dict() or {},
            create_time=getattr(snapshot, "create_time", None),
        )

    def subscribe_added(self, callback: AddedCallback) -> Subscription:
        def on_snapshot(col_snapshot, changes, read_time):
            for change in changes:
                if change.type.name != "ADDED":
                    continue
                try:
                    callback(self._document(change.document))
                except Exception as exc:
                    # an exception escaping here kills the watch thread
                    log.error("Added-document callback failed for %s: %s",
                              change.document.id, exc)

        watch = self._col().on_snapshot(on_snapshot)
        self._subscription = Subscription(on_close=watch.unsubscribe)
        log.info("Watching Firestore collection: %s", self.collection)
        return self._subscription

    def is_notification_sent(self, doc_id: str) -> bool:
        snapshot = self._col().document(doc_id).get()
        return bool(snapshot.exists and (snapshot.to_dict() or {}).get(NOTIFICATION_SENT))

    def mark_notification_sent(self, doc_id: str) -> bool:
        ref = self._col().document(doc_id)
        return _flip_flag(self.db.transaction(), ref)

    def scan(self) -> list[StoreDocument]:
        return [self._document(s) for s in self._col().stream()]

    def recent_orders(self, limit: int = 10) -> list[dict]:
        query = (
            self._col()
            .order_by("createdAt", direction=firestore.Query.DESCENDING)
            .limit(limit)
        )
        return [self._document(s).to_dict() for s in query.stream()]

    def close(self) -> None:
        if self._subscription is not None:
            try:
                self._subscription.unsubscribe()
            except Exception as exc:
                log.warning("Error closing Firestore watch: %s", exc)
            self._subscription = None


def build_firestore_store(settings: Settings) -> Optional[FirestoreOrderStore]:
    """Firestore store for the configured collection, or None in demo mode."""
    if not initialize_firebase(settings):
        return None
    return FirestoreOrderStore(collection=settings.orders_collection)
