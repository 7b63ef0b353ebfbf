#!/usr/bin/env python3
"""
WhatsApp channel — order notifications over the WhatsApp Cloud API.

  Customer   template message "order" (first name, order id, order time,
             item list); on any transport error falls back once to a
             free-form thank-you text.
  Admin      free-form "New Order" text to every configured admin number;
             each number is attempted independently.

Outcomes (see notifications.Outcome):
  NOT_CONFIGURED       token / phone-number id missing; nothing is sent
  CREDENTIAL_EXPIRED   Graph API answered 401; regenerate the access token
  SENT_VIA_FALLBACK    template rejected, text fallback delivered
  FAILED               (fan-out only) recipient send raised

Only when the text fallback itself fails with a non-401 error does
ChatTransportError reach the caller.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

import aiohttp

from config import Settings
from notifications import ChatTransportError, FanoutResult, Outcome, SendResult
from order_normalizer import Order, OrderItem

log = logging.getLogger("pivokart.whatsapp")

TEMPLATE_ITEMS_MAX   = 150     # Graph API limit on a template variable we stay under
PREVIEW_ITEMS        = 3
NOT_CONFIGURED_MSG   = "WhatsApp not configured"
CREDENTIAL_HELP      = (
    "Access token expired. Generate a new token in the Meta Developer Console "
    "and update WHATSAPP_ACCESS_TOKEN."
)

PostFn = Callable[[dict], Awaitable[dict]]


# ─── Formatting ───────────────────────────────────────────────────────────────

def format_amount(amount) -> str:
    return f"₹{amount}" if amount else "N/A"


def format_order_time(moment: datetime, tz: ZoneInfo, with_seconds: bool = False) -> str:
    """en-IN style: '19/10/2026, 02:30 pm'."""
    fmt = "%d/%m/%Y, %I:%M:%S %p" if with_seconds else "%d/%m/%Y, %I:%M %p"
    return moment.astimezone(tz).strftime(fmt).lower()


def format_items_list(items: list[OrderItem], limit: int = TEMPLATE_ITEMS_MAX) -> str:
    """'Naan x2, Rice x1' — truncated to `limit` chars with '...'."""
    if not items:
        return "Your ordered items"
    text = ", ".join(f"{i.name} x{i.quantity}" for i in items)
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text


def format_item_lines(items: list[OrderItem], preview: int = PREVIEW_ITEMS) -> str:
    lines = [f"• {i.name} x{i.quantity}" for i in items[:preview]]
    if len(items) > preview:
        lines.append(f"• ... and {len(items) - preview} more items")
    return "\n".join(lines)


def build_admin_text(order: Order, tz: ZoneInfo, brand: str = "Pivokart") -> str:
    item_lines = format_item_lines(order.items)
    items_block = f"\n*Order Items:*\n{item_lines}\n" if item_lines else ""
    return (
        f"🆕 *New {brand} Order!*\n\n"
        f"📋 *Order ID:* {order.order_id or order.id}\n"
        f"👤 *Customer:* {order.customer_name or 'N/A'}\n"
        f"💰 *Total Amount:* {format_amount(order.total_amount)}\n"
        f"📦 *Items:* {len(order.items)}\n"
        f"📞 *Phone:* {order.customer_phone or 'N/A'}\n"
        f"📍 *Address:* {order.delivery_address or 'N/A'}\n"
        f"⏰ *Time:* {format_order_time(order.created_at, tz, with_seconds=True)}\n"
        f"{items_block}\n"
        f"Please check your {brand} dashboard for more details."
    )


def build_customer_text(order: Order, tz: ZoneInfo, brand: str = "Pivokart") -> str:
    item_lines = format_item_lines(order.items)
    items_block = f"\n*Your Order:*\n{item_lines}\n" if item_lines else ""
    return (
        f"🎉 *Thank you for your {brand} order!*\n\n"
        f"Hi {order.first_name}! 👋\n\n"
        f"Your order has been received and is being processed.\n\n"
        f"📋 *Order ID:* {order.order_id or order.id}\n"
        f"👤 *Customer:* {order.customer_name}\n"
        f"💰 *Total Amount:* {format_amount(order.total_amount)}\n"
        f"📦 *Items:* {len(order.items)}\n"
        f"📞 *Phone:* {order.customer_phone or 'N/A'}\n"
        f"📍 *Address:* {order.delivery_address or 'N/A'}\n"
        f"⏰ *Order Time:* {format_order_time(order.created_at, tz, with_seconds=True)}\n"
        f"{items_block}\n"
        f"We'll notify you when your order is ready for delivery! 🚚\n\n"
        f"Thank you for choosing {brand}! ❤️"
    )


# ─── Service ──────────────────────────────────────────────────────────────────

class WhatsAppService:

    def __init__(self, settings: Settings, post: Optional[PostFn] = None):
        self.settings = settings
        self.tz = ZoneInfo(settings.timezone)
        self._post: PostFn = post or self._post_via_aiohttp

    @property
    def configured(self) -> bool:
        return self.settings.whatsapp_configured

    @property
    def messages_url(self) -> str:
        return f"{self.settings.whatsapp_api_base}/{self.settings.whatsapp_phone_number_id}/messages"

    # ── Transport ─────────────────────────────────────────────────────────────

    async def _post_via_aiohttp(self, payload: dict) -> dict:
        headers = {
            "Authorization": f"Bearer {self.settings.whatsapp_access_token}",
            "Content-Type":  "application/json",
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(self.messages_url, json=payload, headers=headers) as resp:
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError as exc:
                        # gateway error pages come back as HTML
                        raise ChatTransportError(
                            f"HTTP {resp.status}: non-JSON response body",
                            status=resp.status,
                        ) from exc
                    if resp.status >= 400:
                        error = (body or {}).get("error", {}) if isinstance(body, dict) else {}
                        raise ChatTransportError(
                            f"HTTP {resp.status}: {error.get('message', 'request rejected')}",
                            status=resp.status,
                            detail=body,
                        )
                    return body or {}
        except aiohttp.ClientError as exc:
            raise ChatTransportError(f"Connection error: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise ChatTransportError("Request to WhatsApp API timed out") from exc

    # ── Payloads ──────────────────────────────────────────────────────────────

    def build_template_payload(self, recipient: str, order: Order) -> dict:
        params = [
            order.first_name,
            order.order_id or order.id or "N/A",
            format_order_time(order.created_at, self.tz),
            format_items_list(order.items),
        ]
        return {
            "messaging_product": "whatsapp",
            "to":   recipient,
            "type": "template",
            "template": {
                "name":     self.settings.template_name,
                "language": {"code": self.settings.template_language},
                "components": [{
                    "type": "body",
                    "parameters": [{"type": "text", "text": p} for p in params],
                }],
            },
        }

    @staticmethod
    def build_text_payload(recipient: str, text: str) -> dict:
        return {
            "messaging_product": "whatsapp",
            "to":   recipient,
            "type": "text",
            "text": {"body": text},
        }

    # ── Sends ─────────────────────────────────────────────────────────────────

    async def send_template(self, recipient: str, order: Order) -> SendResult:
        """Template first; any transport error → one plain-text fallback."""
        if not self.configured:
            log.warning("WhatsApp credentials not configured; customer message not sent")
            return SendResult(Outcome.NOT_CONFIGURED, recipient, NOT_CONFIGURED_MSG)
        if not recipient:
            log.warning("Customer phone number not found for order %s", order.order_id)
            return SendResult(Outcome.NO_RECIPIENT, "", "Customer phone number not found")

        try:
            response = await self._post(self.build_template_payload(recipient, order))
            log.info("Template message sent to %s for order %s", recipient, order.order_id)
            return SendResult(Outcome.SENT, recipient, "template", response)
        except ChatTransportError as exc:
            log.warning("Template message to %s failed (%s); falling back to text", recipient, exc)

        result = await self.send_plain_text(recipient, order, audience="customer")
        if result.outcome is Outcome.SENT:
            result.outcome = Outcome.SENT_VIA_FALLBACK
        return result

    async def send_plain_text(self, recipient: str, order: Order, audience: str = "customer") -> SendResult:
        if not self.configured:
            return SendResult(Outcome.NOT_CONFIGURED, recipient, NOT_CONFIGURED_MSG)
        if audience == "admin":
            text = build_admin_text(order, self.tz, self.settings.brand_name)
        else:
            text = build_customer_text(order, self.tz, self.settings.brand_name)
        return await self._send_text(recipient, text)

    async def _send_text(self, recipient: str, text: str) -> SendResult:
        try:
            response = await self._post(self.build_text_payload(recipient, text))
        except ChatTransportError as exc:
            if exc.credential_expired:
                log.error("WhatsApp access token is invalid or expired (401)")
                return SendResult(Outcome.CREDENTIAL_EXPIRED, recipient, CREDENTIAL_HELP)
            raise
        log.info("Text message sent to %s", recipient)
        return SendResult(Outcome.SENT, recipient, "text", response)

    async def send_customer_notification(self, order: Order) -> SendResult:
        return await self.send_template(order.customer_phone, order)

    async def send_admin_notification(self, order: Order) -> FanoutResult:
        """Plain-text admin alert to every admin number, independently."""
        if not self.configured:
            log.warning("WhatsApp credentials not configured; admin message not sent")
            return FanoutResult(outcome=Outcome.NOT_CONFIGURED, message=NOT_CONFIGURED_MSG)
        if not self.settings.admin_numbers:
            log.warning("No admin WhatsApp numbers configured")
            return FanoutResult(outcome=Outcome.NO_RECIPIENT, message="No admin numbers configured")

        async def _one(number: str) -> SendResult:
            try:
                return await self.send_plain_text(number, order, audience="admin")
            except ChatTransportError as exc:
                log.error("Admin message to %s failed: %s", number, exc)
                return SendResult(Outcome.FAILED, number, str(exc))

        results = await asyncio.gather(*(_one(n) for n in self.settings.admin_numbers))
        fanout = FanoutResult(results=list(results))
        ok = sum(1 for r in fanout.results if r.success)
        log.info("Admin fan-out for order %s: %d/%d delivered", order.order_id, ok, len(fanout.results))
        return fanout

    async def send_simple_message(self, to: Optional[str], message: str) -> SendResult:
        """Free text to `to` (default: first admin number)."""
        target = to or (self.settings.admin_numbers[0] if self.settings.admin_numbers else "")
        if not self.configured:
            return SendResult(Outcome.NOT_CONFIGURED, target, NOT_CONFIGURED_MSG)
        if not target:
            return SendResult(Outcome.NO_RECIPIENT, "", "No recipient given and no admin number configured")
        return await self._send_text(target, message)
