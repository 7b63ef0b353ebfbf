#!/usr/bin/env python3
"""
order_listener.py — Real-time new-order notifier.

Subscribes to the order store's change feed and, for every order created
after the listener started (T0), notifies the customer and the admins over
WhatsApp, then marks the document `notificationSent`.

Usage
-----
  Inside the API process (see notifier_api.py lifespan):

      listener = OrderListener(store, whatsapp)
      listener.start_listening()        # must run inside the event loop
      ...
      listener.stop_listening()
      await listener.drain()

Threading note
--------------
Firestore and Redis deliver change events on their own background threads.
The store callback never touches the channels directly: it hands the
document to the listener's event loop with `call_soon_threadsafe`, and each
document is then processed as an independent asyncio Task.  A done-callback
logs any unexpected task exit so it is never a silent failure.

Idempotency
-----------
The `notificationSent` flag is the only de-duplication lock.  It is checked
on the snapshot and again with a point read before sending, and set with a
conditional write afterwards.  Two handlers racing on the same new document
can still both send; the second one learns it lost when the conditional
write reports the flag was already set, and that is logged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from notifications import FanoutResult, Outcome, SendResult
from order_normalizer import Order, normalize
from order_store import AbstractOrderStore, StoreDocument, Subscription
from whatsapp_service import WhatsAppService

log = logging.getLogger("pivokart.listener")


@dataclass
class NotificationReport:
    """What happened for one new order."""
    doc_id:   str
    order:    Order
    customer: Optional[SendResult] = None
    admin:    Optional[FanoutResult] = None
    marked:   bool = False
    errors:   list[str] = field(default_factory=list)

    @property
    def any_delivered(self) -> bool:
        return bool(
            (self.customer and self.customer.success)
            or (self.admin and self.admin.success)
        )

    def to_dict(self) -> dict:
        return {
            "docId":    self.doc_id,
            "order":    self.order.to_dict(),
            "customer": self.customer.to_dict() if self.customer else None,
            "admin":    self.admin.to_dict() if self.admin else None,
            "marked":   self.marked,
            "errors":   list(self.errors),
        }


class OrderListener:

    def __init__(
        self,
        store: Optional[AbstractOrderStore],
        whatsapp: WhatsAppService,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.whatsapp = whatsapp
        self._clock = clock
        self.active = False
        self.started_at: Optional[datetime] = None
        self.notified_count = 0
        self._subscription: Optional[Subscription] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: set[asyncio.Task] = set()

    # ─── Lifecycle ───────────────────────────────────────────────────────────

    def start_listening(self) -> bool:
        """
        Subscribe (once per listener) and record T0.  Idempotent while
        listening; after stop_listening() it re-activates and resets T0.
        """
        if self.store is None:
            log.warning("Order store not configured; order listener not started")
            return False
        if self.active:
            log.info("Order listener already active")
            return True

        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("start_listening() called outside an event loop; "
                        "change events will be dropped until one is running")
            self._loop = None

        self.started_at = self._clock()
        self.active = True
        if self._subscription is None:
            self._subscription = self.store.subscribe_added(self._on_added)
        log.info("Listening for new orders on '%s' (T0=%s)",
                 self.store.collection, self.started_at.isoformat())
        return True

    def stop_listening(self) -> None:
        """Ignore further events.  In-flight handlers run to completion."""
        if self.active:
            log.info("Order listener stopped")
        self.active = False

    def close(self) -> None:
        self.stop_listening()
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def drain(self) -> None:
        """Wait for every dispatched handler (including ones queued from other threads)."""
        await asyncio.sleep(0)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await asyncio.sleep(0)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # ─── Change-feed plumbing ────────────────────────────────────────────────

    def _is_backlog(self, doc: StoreDocument) -> bool:
        return (
            self.started_at is None
            or doc.create_time is None
            or doc.create_time <= self.started_at
        )

    def _on_added(self, doc: StoreDocument) -> None:
        """Store callback; may run on a foreign thread."""
        if not self.active or self._is_backlog(doc):
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            log.warning("No running event loop; dropping order event %s", doc.id)
            return
        loop.call_soon_threadsafe(self._spawn, doc)

    def _spawn(self, doc: StoreDocument) -> None:
        task = asyncio.get_running_loop().create_task(
            self.handle_added(doc), name=f"order-notify-{doc.id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            log.critical("%s died unexpectedly: %s", task.get_name(), exc)

    # ─── Per-document handler ────────────────────────────────────────────────

    async def handle_added(self, doc: StoreDocument) -> Optional[NotificationReport]:
        if self._is_backlog(doc):
            log.debug("Skipping existing order %s (created before listener start)", doc.id)
            return None

        if doc.notification_sent:
            log.info("Notification already sent for order %s, skipping", doc.id)
            return None
        if await asyncio.to_thread(self.store.is_notification_sent, doc.id):
            log.info("Notification already sent for order %s (point read), skipping", doc.id)
            return None

        order = normalize(doc.data, doc_id=doc.id, created_at=doc.create_time)
        log.info("New order detected: %s (customer=%s, items=%d)",
                 order.order_id, order.customer_name, len(order.items))

        report = NotificationReport(doc_id=doc.id, order=order)
        customer, admin = await asyncio.gather(
            self.whatsapp.send_customer_notification(order),
            self.whatsapp.send_admin_notification(order),
            return_exceptions=True,
        )

        if isinstance(customer, Exception):
            log.error("Customer notification for %s failed: %s", order.order_id, customer)
            report.errors.append(f"customer: {customer}")
            customer = SendResult(Outcome.FAILED, order.customer_phone, str(customer))
        if isinstance(admin, Exception):
            log.error("Admin notification for %s failed: %s", order.order_id, admin)
            report.errors.append(f"admin: {admin}")
            admin = FanoutResult(outcome=Outcome.FAILED, message=str(admin))
        report.customer, report.admin = customer, admin

        # Marked whatever the send outcome was; failed sends are not retried.
        try:
            flipped = await asyncio.to_thread(self.store.mark_notification_sent, doc.id)
        except Exception as exc:
            log.error("Could not mark order %s as notified: %s", doc.id, exc)
            report.errors.append(f"mark: {exc}")
        else:
            report.marked = True
            if not flipped:
                log.warning("Order %s was already marked by another handler; "
                            "a duplicate notification may have been sent", doc.id)

        self.notified_count += 1
        log.info("Order %s processed (customer=%s, admin=%s)",
                 order.order_id, customer.outcome.value,
                 "ok" if admin.success else (admin.outcome.value if admin.outcome else "failed"))
        return report
