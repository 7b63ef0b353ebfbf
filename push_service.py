#!/usr/bin/env python3
"""
FCM push channel — sends one notification per device token through
firebase_admin.messaging.

Every token is attempted independently; one bad token never aborts the
batch.  Failures are classified by FCM error code, and unregistered or
malformed tokens are flagged `invalid_token=True` so callers can prune them.

    push = PushService()
    result = await push.send_push({"tok1", "tok2"}, "Title", "Body")
    result.to_dict()   # {"success": ..., "summary": {...}, "results": [...]}
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from firebase_admin import exceptions as fb_exceptions
from firebase_admin import messaging

from firestore_store import firebase_ready
from notifications import Outcome, PushResult, PushTransportError, TokenResult, mask

log = logging.getLogger("pivokart.push")

CLICK_ACTION = "FLUTTER_NOTIFICATION_CLICK"

# FCM codes meaning "this token will never work again"
INVALID_TOKEN_CODES = {
    "NOT_FOUND",
    "UNREGISTERED",
    "INVALID_ARGUMENT",
    "messaging/invalid-registration-token",
    "messaging/registration-token-not-registered",
}

Sender = Callable[[messaging.Message], str]


def classify(exc: Exception) -> tuple[str, bool]:
    """→ (error_code, invalid_token)."""
    if isinstance(exc, messaging.UnregisteredError):
        return "UNREGISTERED", True
    if isinstance(exc, (fb_exceptions.FirebaseError, PushTransportError)):
        code = str(exc.code or "UNKNOWN")
        return code, code in INVALID_TOKEN_CODES
    if isinstance(exc, ValueError):
        # the SDK validates the token string locally before sending
        return "INVALID_ARGUMENT", True
    return "UNKNOWN", False


class PushService:

    def __init__(
        self,
        sender: Optional[Sender] = None,
        is_configured: Optional[Callable[[], bool]] = None,
    ):
        self._sender: Sender = sender or messaging.send
        self._is_configured = is_configured or firebase_ready

    @property
    def configured(self) -> bool:
        return self._is_configured()

    @staticmethod
    def build_message(token: str, title: str, body: str) -> messaging.Message:
        return messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data={
                "title":        title,
                "body":         body,
                "timestamp":    datetime.now(timezone.utc).isoformat(),
                "click_action": CLICK_ACTION,
            },
            token=token,
        )

    async def _send_one(self, token: str, title: str, body: str) -> TokenResult:
        try:
            message_id = await asyncio.to_thread(
                self._sender, self.build_message(token, title, body)
            )
        except (fb_exceptions.FirebaseError, PushTransportError, ValueError) as exc:
            code, invalid = classify(exc)
            log.warning("FCM send to %s failed [%s]: %s", mask(token), code, exc)
            return TokenResult(
                token=mask(token), success=False,
                error=str(exc), error_code=code, invalid_token=invalid,
            )
        except Exception as exc:
            # e.g. a credential refresh failure; only this token fails
            log.error("FCM send to %s failed unexpectedly: %s", mask(token), exc)
            return TokenResult(
                token=mask(token), success=False,
                error=str(exc), error_code="UNKNOWN", invalid_token=False,
            )
        log.info("FCM notification sent to %s", mask(token))
        return TokenResult(token=mask(token), success=True, response=message_id)

    async def send_push(self, tokens: Iterable[str], title: str, body: str) -> PushResult:
        if not self.configured:
            log.warning("Firebase not initialised; push notification not sent")
            return PushResult(Outcome.NOT_CONFIGURED, error="Firebase not configured")

        unique = [t for t in dict.fromkeys(tokens or []) if t]
        if not unique:
            log.warning("No FCM tokens provided")
            return PushResult(Outcome.NO_TOKENS, error="No FCM tokens provided")

        log.info("Sending FCM notification to %d device(s)", len(unique))
        results = await asyncio.gather(*(self._send_one(t, title, body) for t in unique))

        ok = sum(1 for r in results if r.success)
        result = PushResult(
            outcome    = Outcome.SENT if ok else Outcome.FAILED,
            total      = len(results),
            successful = ok,
            failed     = len(results) - ok,
            results    = list(results),
        )
        log.info("FCM batch: %d successful, %d failed", result.successful, result.failed)
        if result.invalid_tokens:
            log.info("%d invalid token(s) should be removed", len(result.invalid_tokens))
        return result
