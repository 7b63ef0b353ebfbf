#!/usr/bin/env python3
"""
test_whatsapp_service.py — WhatsApp channel behaviour against a fake Graph API.

Covers:
  1. Template success (parameter order, payload shape)
  2. Template rejected → plain-text fallback → SENT_VIA_FALLBACK
  3. Fallback 401 → CREDENTIAL_EXPIRED; fallback 500 → ChatTransportError
  4. Missing credentials / missing phone → NOT_CONFIGURED / NO_RECIPIENT
  5. Admin fan-out: one admin failing does not stop the others
  6. Formatting helpers (IST time, item list truncation, preview lines)
  7. Real HTTP transport: HTML 502 on the template still falls back;
     timeouts become per-admin FAILED records

Run:
    python3 test_whatsapp_service.py
"""

import asyncio
import sys
from datetime import datetime, timezone
from typing import Callable, Optional
from unittest.mock import patch
from zoneinfo import ZoneInfo

import aiohttp
from aiohttp import web

from config import Settings
from notifications import ChatTransportError, Outcome
from order_normalizer import OrderItem, normalize
from whatsapp_service import (
    WhatsAppService,
    format_item_lines,
    format_items_list,
    format_order_time,
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


class FakeGraph:
    """Records payloads; `rule(payload)` may return an error to raise."""

    def __init__(self, rule: Optional[Callable[[dict], Optional[Exception]]] = None):
        self.calls: list[dict] = []
        self.rule = rule

    async def __call__(self, payload: dict) -> dict:
        self.calls.append(payload)
        err = self.rule(payload) if self.rule else None
        if err:
            raise err
        return {"messages": [{"id": f"wamid.{len(self.calls)}"}]}

    def types(self) -> list[str]:
        return [c["type"] for c in self.calls]


def _settings(**overrides) -> Settings:
    base = dict(
        whatsapp_access_token="EAAG-test-token",
        whatsapp_phone_number_id="1234567890",
        admin_numbers=["+911111111111", "+912222222222"],
    )
    base.update(overrides)
    return Settings(**base)


def _order(**overrides):
    raw = {
        "orderId": "ORD-100",
        "customerName": "Ravi Kumar",
        "customerPhone": "+919999999999",
        "totalAmount": 500,
        "deliveryAddress": "Tanakpur",
        "items": [{"name": "Naan", "quantity": 2}],
    }
    raw.update(overrides)
    return normalize(raw, doc_id="doc-1",
                     created_at=datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc))


def _reject_template(status: int = 400):
    def rule(payload):
        if payload["type"] == "template":
            return ChatTransportError("template rejected", status=status)
        return None
    return rule


# ─── Tests ────────────────────────────────────────────────────────────────────

def test_template_success():
    print("\n[1] Template success")
    graph = FakeGraph()
    wa = WhatsAppService(_settings(), post=graph)
    result = asyncio.run(wa.send_customer_notification(_order()))

    _check("outcome SENT",             result.outcome is Outcome.SENT, result.outcome.value)
    _check("one call, template",       graph.types() == ["template"])
    payload = graph.calls[0]
    _check("recipient is order phone", payload["to"] == "+919999999999")
    _check("template name/lang",       payload["template"]["name"] == "order"
                                       and payload["template"]["language"] == {"code": "en"})
    params = [p["text"] for p in payload["template"]["components"][0]["parameters"]]
    _check("parameter order",          params[0] == "Ravi" and params[1] == "ORD-100"
                                       and params[3] == "Naan x2", str(params))
    _check("order time in IST",        params[2] == "19/10/2026, 02:30 pm", params[2])


def test_template_fallback():
    print("\n[2] Template rejected → text fallback")
    graph = FakeGraph(_reject_template(400))
    wa = WhatsAppService(_settings(), post=graph)
    result = asyncio.run(wa.send_template("+919999999999", _order()))

    _check("outcome SENT_VIA_FALLBACK", result.outcome is Outcome.SENT_VIA_FALLBACK)
    _check("success flag set",          result.success)
    _check("distinct from direct SENT", result.outcome is not Outcome.SENT)
    _check("template then text",        graph.types() == ["template", "text"])
    body = graph.calls[1]["text"]["body"]
    _check("customer text frame",       "Thank you for your Pivokart order" in body)
    _check("same order in fallback",    "ORD-100" in body and "Naan x2" in body)


def test_fallback_errors():
    print("\n[3] Fallback errors")

    def expired(payload):
        if payload["type"] == "template":
            return ChatTransportError("bad template", status=400)
        return ChatTransportError("token expired", status=401)

    wa = WhatsAppService(_settings(), post=FakeGraph(expired))
    result = asyncio.run(wa.send_template("+919999999999", _order()))
    _check("401 → CREDENTIAL_EXPIRED", result.outcome is Outcome.CREDENTIAL_EXPIRED)
    _check("not success",              not result.success)

    wa = WhatsAppService(_settings(), post=FakeGraph(
        lambda p: ChatTransportError("boom", status=500)))
    raised = False
    try:
        asyncio.run(wa.send_template("+919999999999", _order()))
    except ChatTransportError as exc:
        raised = exc.status == 500
    _check("fallback 500 propagates", raised)


def test_not_configured_and_no_recipient():
    print("\n[4] Not configured / no recipient")
    graph = FakeGraph()
    wa = WhatsAppService(_settings(whatsapp_access_token=""), post=graph)
    customer = asyncio.run(wa.send_customer_notification(_order()))
    admin = asyncio.run(wa.send_admin_notification(_order()))
    _check("customer NOT_CONFIGURED",   customer.outcome is Outcome.NOT_CONFIGURED)
    _check("admin NOT_CONFIGURED",      admin.outcome is Outcome.NOT_CONFIGURED and not admin.success)
    _check("nothing sent",              graph.calls == [])

    wa = WhatsAppService(_settings(), post=graph)
    result = asyncio.run(wa.send_customer_notification(_order(customerPhone="")))
    _check("no phone → NO_RECIPIENT",   result.outcome is Outcome.NO_RECIPIENT)

    wa = WhatsAppService(_settings(admin_numbers=[]), post=graph)
    fan = asyncio.run(wa.send_admin_notification(_order()))
    _check("no admins → NO_RECIPIENT",  fan.outcome is Outcome.NO_RECIPIENT)
    _check("still nothing sent",        graph.calls == [])


def test_admin_fanout_partial_failure():
    print("\n[5] Admin fan-out")

    def second_admin_down(payload):
        if payload["to"] == "+912222222222":
            return ChatTransportError("HTTP 500", status=500)
        return None

    graph = FakeGraph(second_admin_down)
    wa = WhatsAppService(_settings(), post=graph)
    items = [{"name": n, "quantity": 1} for n in ("Naan", "Dal", "Rice", "Lassi")]
    fan = asyncio.run(wa.send_admin_notification(_order(items=items)))

    outcomes = [r.outcome for r in fan.results]
    _check("both admins attempted",    sorted(c["to"] for c in graph.calls)
                                       == ["+911111111111", "+912222222222"])
    _check("per-recipient outcomes",   outcomes == [Outcome.SENT, Outcome.FAILED], str(outcomes))
    _check("overall success",          fan.success)
    _check("plain text, not template", set(graph.types()) == {"text"})
    body = graph.calls[0]["text"]["body"]
    _check("admin headline",           "New Pivokart Order" in body)
    _check("amount formatted",         "₹500" in body)
    _check("preview truncated",        "... and 1 more items" in body and "Lassi" not in body)

    d = fan.to_dict()
    _check("to_dict recipients",       len(d["recipients"]) == 2 and d["success"] is True)


def test_simple_message():
    print("\n[6] send_simple_message")
    graph = FakeGraph()
    wa = WhatsAppService(_settings(), post=graph)
    result = asyncio.run(wa.send_simple_message(None, "hello"))
    _check("defaults to first admin", result.recipient == "+911111111111" and result.success)
    _check("text body",               graph.calls[0]["text"]["body"] == "hello")


def test_formatting_helpers():
    print("\n[7] Formatting helpers")
    ist = ZoneInfo("Asia/Kolkata")
    moment = datetime(2026, 1, 5, 18, 45, 10, tzinfo=timezone.utc)
    _check("IST time",        format_order_time(moment, ist) == "06/01/2026, 12:15 am")
    _check("IST with seconds", format_order_time(moment, ist, with_seconds=True)
                               == "06/01/2026, 12:15:10 am")

    _check("empty item list", format_items_list([]) == "Your ordered items")
    many = [OrderItem(f"Paneer Butter Masala {i}", 2) for i in range(20)]
    text = format_items_list(many)
    _check("truncated to 150", len(text) == 150 and text.endswith("..."), str(len(text)))

    lines = format_item_lines([OrderItem("A", 1), OrderItem("B", 2)])
    _check("preview lines",   lines == "• A x1\n• B x2")


def test_http_transport_errors():
    print("\n[8] HTTP transport errors")

    async def run():
        seen: list[str] = []

        async def messages(request: web.Request) -> web.Response:
            payload = await request.json()
            seen.append(payload["type"])
            if payload["type"] == "template":
                return web.Response(status=502, content_type="text/html",
                                    text="<html><body>502 Bad Gateway</body></html>")
            return web.json_response({"messages": [{"id": "wamid.text"}]})

        app = web.Application()
        app.router.add_post("/1234567890/messages", messages)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        port = runner.addresses[0][1]
        try:
            wa = WhatsAppService(_settings(whatsapp_api_base=f"http://127.0.0.1:{port}"))
            result = await wa.send_template("+919999999999", _order())
        finally:
            await runner.cleanup()

        _check("HTML 502 → SENT_VIA_FALLBACK", result.outcome is Outcome.SENT_VIA_FALLBACK,
               result.outcome.value)
        _check("template then text",           seen == ["template", "text"], str(seen))

        wa = WhatsAppService(_settings())
        with patch.object(aiohttp.ClientSession, "post", side_effect=asyncio.TimeoutError()):
            fan = await wa.send_admin_notification(_order())
        _check("timeout per admin → FAILED",   [r.outcome for r in fan.results]
                                               == [Outcome.FAILED, Outcome.FAILED])
        _check("timeout reported",             "timed out" in fan.results[0].message)

    asyncio.run(run())


# ─── Runner ───────────────────────────────────────────────────────────────────

def main() -> int:
    print("=" * 60)
    print("  Pivokart — WhatsApp Channel Tests")
    print("=" * 60)

    tests = [
        test_template_success,
        test_template_fallback,
        test_fallback_errors,
        test_not_configured_and_no_recipient,
        test_admin_fanout_partial_failure,
        test_simple_message,
        test_formatting_helpers,
        test_http_transport_errors,
    ]
    for test in tests:
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
