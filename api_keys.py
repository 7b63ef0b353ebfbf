#!/usr/bin/env python3
"""
API Key Store — weather / AI provider keys with a two-tier lookup.

  1. api_keys.csv next to the process (written by POST /set-multi-api-keys)
  2. Environment variables (OPENWEATHER_API_KEY, GEMINI_API_KEY, OPENAI_API_KEY)

CSV layout (one row per service, header included):

    service,api_key,updated_at
    openweather,0123abcd...,2026-10-19T09:00:00+00:00

Keys never leave this module unmasked except through get_key(); everything
returned to the HTTP surface goes through mask_key().
"""

from __future__ import annotations

import csv
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

log = logging.getLogger("pivokart.api_keys")

SERVICES = ("openweather", "gemini", "openai")

ENV_VARS: dict[str, str] = {
    "openweather": "OPENWEATHER_API_KEY",
    "gemini":      "GEMINI_API_KEY",
    "openai":      "OPENAI_API_KEY",
}

_FIELDS = ("service", "api_key", "updated_at")


def mask_key(key: Optional[str]) -> Optional[str]:
    """'sk-abcdefgh1234wxyz' → 'sk-abcde...wxyz'."""
    if not key:
        return None
    if len(key) <= 12:
        return key[:4] + "..."
    return f"{key[:8]}...{key[-4:]}"


class KeyLookup:
    """Result of a key lookup with provenance."""

    def __init__(self, service: str, value: Optional[str], source: str):
        self.service = service
        self.value = value
        self.source = source          # "csv" | "env" | "not_found"
        self.found = value is not None

    def __repr__(self) -> str:
        return f"KeyLookup(service={self.service!r}, source={self.source!r}, value={mask_key(self.value)})"


class ApiKeyStore:

    def __init__(self, path: Path = Path("api_keys.csv")):
        self.path = Path(path)

    # ─── CSV tier ──────────────────────────────────────────────────────────

    def _read_csv(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        keys: dict[str, str] = {}
        try:
            with open(self.path, newline="") as f:
                for row in csv.DictReader(f):
                    service = (row.get("service") or "").strip()
                    value = (row.get("api_key") or "").strip()
                    if service and value:
                        keys[service] = value
        except (OSError, csv.Error) as exc:
            log.error("Could not read %s: %s", self.path, exc)
            return {}
        return keys

    def _write_csv(self, keys: dict[str, str]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=_FIELDS)
            writer.writeheader()
            for service, value in keys.items():
                writer.writerow({"service": service, "api_key": value, "updated_at": now})
        os.replace(tmp, self.path)

    # ─── Public API ────────────────────────────────────────────────────────

    def lookup(self, service: str) -> KeyLookup:
        value = self._read_csv().get(service)
        if value:
            return KeyLookup(service, value, "csv")
        env_value = os.getenv(ENV_VARS.get(service, ""), "").strip()
        if env_value:
            return KeyLookup(service, env_value, "env")
        return KeyLookup(service, None, "not_found")

    def get_key(self, service: str) -> Optional[str]:
        return self.lookup(service).value

    def all_keys(self) -> dict[str, Optional[str]]:
        return {s: self.get_key(s) for s in SERVICES}

    def set_keys(self, updates: dict[str, str]) -> None:
        """Merge `updates` into the CSV file (unknown services rejected)."""
        unknown = set(updates) - set(SERVICES)
        if unknown:
            raise ValueError(f"Unknown API key service(s): {', '.join(sorted(unknown))}")
        keys = self._read_csv()
        for service, value in updates.items():
            keys[service] = value.strip()
        self._write_csv(keys)
        log.info("API keys saved to %s (%s)", self.path, ", ".join(sorted(updates)))

    def masked(self) -> dict[str, Optional[str]]:
        return {s: mask_key(v) for s, v in self.all_keys().items()}

    def configured_count(self) -> int:
        return sum(1 for v in self.all_keys().values() if v)
