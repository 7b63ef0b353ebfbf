#!/usr/bin/env python3
"""
Redis Backend — alternative AbstractOrderStore for deployments without
Firestore.  Activate with ORDER_STORE_BACKEND=redis (and REDIS_URL).

Key design:
  - Namespace prefix  "pivokart:"  prevents collisions with other apps
  - Sorted set (score = creation Unix timestamp) is the server-assigned
    creation time and drives scan / recent-order queries
  - Notification bookkeeping in its own hash; HSETNX gives the atomic
    "set flag only if currently unset" write
  - Change feed: add_order() publishes {"type": "added", "order_id": ...} on
    "pivokart:order_events"; subscribers read it on a background thread

Dependencies:  pip install redis
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

import redis
from redis import ConnectionPool

from order_store import (
    NOTIFICATION_SENT,
    NOTIFICATION_SENT_AT,
    AbstractOrderStore,
    AddedCallback,
    StoreDocument,
    Subscription,
)

log = logging.getLogger("pivokart.redis")


# ─── Key schema ───────────────────────────────────────────────────────────────
#
#  pivokart:{collection}:doc:{id}            → JSON string  (order document)
#  pivokart:{collection}:timeline            → sorted set   score=unix_ts, member=id
#  pivokart:{collection}:notification:{id}   → hash         sent="1", sent_at=iso
#  pivokart:{collection}:events              → pub/sub channel


class RedisOrderStore(AbstractOrderStore):

    NAMESPACE = "pivokart:"

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        collection: str = "orders",
        max_connections: int = 50,
        socket_timeout: float = 5.0,
    ):
        self.collection = collection
        self.pool = ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
            decode_responses=True,  # strings, not bytes
        )
        self.client = redis.Redis(connection_pool=self.pool)
        self._subscriptions: list[Subscription] = []

    # ─── Internal helpers ──────────────────────────────────────────────────

    def _k(self, category: str, *parts: str) -> str:
        """Build a namespaced key under this collection."""
        base = f"{self.NAMESPACE}{self.collection}:{category}"
        return base + (":" + ":".join(str(p) for p in parts) if parts else "")

    @property
    def channel(self) -> str:
        return self._k("events")

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _load_many(self, ids: list[str]) -> list[StoreDocument]:
        if not ids:
            return []
        pipe = self.client.pipeline()
        for doc_id in ids:
            pipe.get(self._k("doc", doc_id))
            pipe.zscore(self._k("timeline"), doc_id)
            pipe.hgetall(self._k("notification", doc_id))
        raw = pipe.execute()

        docs = []
        for i, doc_id in enumerate(ids):
            body, score, notification = raw[3 * i: 3 * i + 3]
            if body is None:
                continue
            try:
                data = json.loads(body)
            except (json.JSONDecodeError, TypeError):
                log.warning("Skipping malformed order document %s", doc_id)
                continue
            if notification.get("sent") == "1":
                data[NOTIFICATION_SENT] = True
                data[NOTIFICATION_SENT_AT] = notification.get("sent_at")
            created = (
                datetime.fromtimestamp(float(score), tz=timezone.utc)
                if score is not None else None
            )
            docs.append(StoreDocument(id=doc_id, data=data, create_time=created))
        return docs

    # ─── Producer side ─────────────────────────────────────────────────────

    def add_order(
        self,
        data: dict,
        doc_id: Optional[str] = None,
        create_time: Optional[datetime] = None,
    ) -> StoreDocument:
        """Store a new order document and publish its "added" event."""
        doc_id = doc_id or uuid.uuid4().hex[:20]
        created = create_time or self._now()

        pipe = self.client.pipeline()
        pipe.set(self._k("doc", doc_id), json.dumps(data, default=str))
        pipe.zadd(self._k("timeline"), {doc_id: created.timestamp()})
        pipe.execute()

        self.client.publish(self.channel, json.dumps({
            "type":     "added",
            "order_id": doc_id,
            "ts":       created.isoformat(),
        }))
        return StoreDocument(id=doc_id, data=dict(data), create_time=created)

    # ─── AbstractOrderStore ────────────────────────────────────────────────

    def subscribe_added(self, callback: AddedCallback) -> Subscription:
        """
        Thread-based pub/sub reader.  Pub/sub connections must not be reused
        for commands, so documents are fetched through the pooled client.
        """
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)

        def _handler(message: dict) -> None:
            try:
                payload = json.loads(message["data"])
            except (json.JSONDecodeError, TypeError):
                log.warning("Malformed order event (not JSON): %s", message.get("data"))
                return
            if payload.get("type") != "added" or not payload.get("order_id"):
                return
            for doc in self._load_many([payload["order_id"]]):
                try:
                    callback(doc)
                except Exception as exc:
                    log.error("Added-document callback failed for %s: %s", doc.id, exc)

        pubsub.subscribe(**{self.channel: _handler})
        thread = pubsub.run_in_thread(sleep_time=0.5, daemon=True)
        log.info("Subscribed to %s", self.channel)

        def _close() -> None:
            thread.stop()
            pubsub.close()

        sub = Subscription(on_close=_close)
        self._subscriptions.append(sub)
        return sub

    def is_notification_sent(self, doc_id: str) -> bool:
        if self.client.hget(self._k("notification", doc_id), "sent") == "1":
            return True
        docs = self._load_many([doc_id])
        return bool(docs and docs[0].notification_sent)

    def mark_notification_sent(self, doc_id: str) -> bool:
        if not self.client.exists(self._k("doc", doc_id)):
            raise KeyError(f"order document {doc_id!r} not found")
        key = self._k("notification", doc_id)
        flipped = bool(self.client.hsetnx(key, "sent", "1"))
        if flipped:
            self.client.hset(key, "sent_at", self._now().isoformat())
        return flipped

    def scan(self) -> list[StoreDocument]:
        return self._load_many(self.client.zrange(self._k("timeline"), 0, -1))

    def recent_orders(self, limit: int = 10) -> list[dict]:
        ids = self.client.zrevrange(self._k("timeline"), 0, limit - 1)
        return [d.to_dict() for d in self._load_many(ids)]

    # ─── Lifecycle ─────────────────────────────────────────────────────────

    def close(self) -> None:
        """Stop pub/sub readers, then disconnect the pool."""
        for sub in self._subscriptions:
            try:
                sub.unsubscribe()
            except Exception as exc:
                log.warning("Error stopping pub/sub reader: %s", exc)
        self._subscriptions.clear()
        try:
            self.client.close()
        finally:
            self.pool.disconnect()
