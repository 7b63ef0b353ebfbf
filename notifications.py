#!/usr/bin/env python3
"""
Shared notification result types — used by the WhatsApp and FCM channels,
the order listener, the weather workflow and the API.

Send paths never raise for "not configured" or "credential expired"; they
return a result carrying one of the Outcome values below so that one broken
channel can never block another.  Transport exceptions are typed so callers
can catch them at per-recipient boundaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Outcome(str, Enum):
    SENT               = "sent"
    SENT_VIA_FALLBACK  = "sent_via_fallback"
    NOT_CONFIGURED     = "not_configured"
    CREDENTIAL_EXPIRED = "credential_expired"
    NO_RECIPIENT       = "no_recipient"
    NO_TOKENS          = "no_tokens"
    FAILED             = "failed"


_SUCCESS = {Outcome.SENT, Outcome.SENT_VIA_FALLBACK}


# ─── Errors ───────────────────────────────────────────────────────────────────

class NotificationError(Exception):
    """Base class for transport-level failures."""


class ChatTransportError(NotificationError):
    """The chat API rejected a request or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.status = status
        self.detail = detail

    @property
    def credential_expired(self) -> bool:
        return self.status == 401


class PushTransportError(NotificationError):
    """An FCM send failed for one token."""

    def __init__(self, message: str, code: str = "UNKNOWN"):
        super().__init__(message)
        self.code = code


# ─── Results ──────────────────────────────────────────────────────────────────

@dataclass
class SendResult:
    """One message to one recipient over one transport."""
    outcome:   Outcome
    recipient: str = ""
    message:   str = ""
    response:  Optional[dict] = None

    @property
    def success(self) -> bool:
        return self.outcome in _SUCCESS

    def to_dict(self) -> dict:
        return {
            "success":   self.success,
            "outcome":   self.outcome.value,
            "recipient": self.recipient,
            "message":   self.message,
            "response":  self.response,
        }


@dataclass
class FanoutResult:
    """Aggregate of independent per-recipient sends (admin fan-out)."""
    results: list[SendResult] = field(default_factory=list)
    outcome: Optional[Outcome] = None    # set only when no recipient was attempted
    message: str = ""

    @property
    def success(self) -> bool:
        return any(r.success for r in self.results)

    def to_dict(self) -> dict:
        return {
            "success":    self.success,
            "outcome":    self.outcome.value if self.outcome else None,
            "message":    self.message,
            "recipients": [r.to_dict() for r in self.results],
        }


@dataclass
class TokenResult:
    token:         str              # masked
    success:       bool
    response:      Optional[str] = None
    error:         Optional[str] = None
    error_code:    Optional[str] = None
    invalid_token: bool = False     # unregistered / malformed, do not retry

    def to_dict(self) -> dict:
        out: dict = {"token": self.token, "success": self.success}
        if self.success:
            out["response"] = self.response
        else:
            out.update(error=self.error, errorCode=self.error_code,
                       invalidToken=self.invalid_token)
        return out


@dataclass
class PushResult:
    outcome:    Outcome
    total:      int = 0
    successful: int = 0
    failed:     int = 0
    results:    list[TokenResult] = field(default_factory=list)
    error:      Optional[str] = None

    @property
    def success(self) -> bool:
        return self.successful > 0

    @property
    def invalid_tokens(self) -> list[str]:
        return [r.token for r in self.results if r.invalid_token]

    def to_dict(self) -> dict:
        out: dict = {
            "success": self.success,
            "outcome": self.outcome.value,
            "summary": {
                "total":      self.total,
                "successful": self.successful,
                "failed":     self.failed,
            },
            "results": [r.to_dict() for r in self.results],
        }
        if self.error:
            out["error"] = self.error
        return out


def mask(secret: str, keep: int = 10) -> str:
    """'cbbTRN-XR_ioSPHsIJ...' → 'cbbTRN-XR_...'  (tokens in logs and API output)."""
    if not secret:
        return ""
    if len(secret) <= keep:
        return secret
    return secret[:keep] + "..."
