#!/usr/bin/env python3
"""
run_notifier.py — Pivokart order notifier entry point.

Starts the HTTP API under uvicorn.  App startup initialises Firebase (or the
configured order store), starts the new-order listener and the hourly
weather scheduler; SIGINT / SIGTERM (handled by uvicorn) run the shutdown
path, which stops both and waits for in-flight notifications.

Usage:
  python3 run_notifier.py                  # serve on PORT / SERVER_PORT (3000)
  python3 run_notifier.py --port 8080      # explicit port
  python3 run_notifier.py --no-scheduler   # listener + API only
  python3 run_notifier.py --check-config   # print which credentials are set and exit
"""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn

from api_keys import SERVICES, ApiKeyStore, mask_key
from config import Settings
from notifier_api import build_services, create_app

log = logging.getLogger("pivokart")


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [notifier] %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def check_config(settings: Settings) -> int:
    """Print credential presence (never values) and return an exit code."""
    ok = "configured ✅"
    missing = "not configured ❌"
    print("📋 Current notifier configuration:\n")
    for key, value in settings.describe().items():
        print(f"  {key:<20} {value}")

    keys = ApiKeyStore(settings.api_keys_path)
    print("\n🔑 Weather / AI keys:")
    for service in SERVICES:
        found = keys.lookup(service)
        state = f"{mask_key(found.value)} ({found.source})" if found.found else missing
        print(f"  {service:<20} {state}")

    print(f"\n  login                {ok if settings.admin_login_email else missing}")
    if settings.admin_numbers:
        print(f"\n📱 Admin notifications go to: {', '.join(settings.admin_numbers)}")
    else:
        print("\n⚠️  No admin numbers: set ADMIN_WHATSAPP_NUMBERS in .env")
    return 0 if settings.whatsapp_configured else 1


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Pivokart notifier — WhatsApp order alerts + FCM weather pushes"
    )
    parser.add_argument("--port", "-p", type=int, default=None, help="HTTP port (default: PORT or 3000)")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    parser.add_argument("--check-config", action="store_true", help="Print credential status and exit")
    parser.add_argument("--no-scheduler", action="store_true", help="Do not start the weather scheduler")
    args = parser.parse_args()

    _setup_logging()
    settings = Settings.from_env()
    if args.port:
        settings.port = args.port

    if args.check_config:
        return check_config(settings)

    services = build_services(settings, start_scheduler=not args.no_scheduler)
    app = create_app(services)

    log.info("Pivokart notifier on %s:%d (store=%s, scheduler=%s)",
             args.host, settings.port, settings.store_backend,
             "off" if args.no_scheduler else "on")
    uvicorn.run(app, host=args.host, port=settings.port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
