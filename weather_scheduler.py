#!/usr/bin/env python3
"""
Weather Scheduler — hourly weather push notifications inside a daily window.

┌──────────────────────────────────────────────────────────────┐
│  WeatherScheduler (Stopped ⇄ Running)                        │
│                                                              │
│   start() ──► in window? ──► fire now                        │
│      │                                                       │
│      └──► every 60 s: minute == 0 and in window              │
│                       and hour slot not yet fired ──► fire   │
│                                                              │
│   fire ──► WeatherNotificationWorkflow.run()                 │
│              weather + AI message ──► push tokens ──► FCM    │
└──────────────────────────────────────────────────────────────┘

Window is [window_start, window_end) in local hours of the configured
timezone (default 09:00-21:00 Asia/Kolkata).  Workflow failures are logged
and never change scheduler state; the counter only moves when a push batch
actually went out.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Coroutine, Optional
from zoneinfo import ZoneInfo

from notifications import PushResult
from order_store import AbstractOrderStore
from push_service import PushService
from recipient_resolver import collect_push_tokens
from weather_service import WeatherService

log = logging.getLogger("pivokart.scheduler")

CHECK_INTERVAL_SEC = 60


# ─── Workflow ─────────────────────────────────────────────────────────────────

@dataclass
class WorkflowResult:
    weather: dict                      # get_weather_and_message() output
    tokens:  int = 0
    push:    Optional[PushResult] = None

    @property
    def sent(self) -> bool:
        return self.push is not None and self.push.total > 0

    @property
    def dispatched(self) -> bool:
        """Tokens were found and handed to the push channel, whatever it did."""
        return self.tokens > 0 and self.push is not None

    def to_dict(self) -> dict:
        return {
            "weather": self.weather,
            "tokens":  self.tokens,
            "fcm":     self.push.to_dict() if self.push else None,
            "sent":    self.sent,
        }


class WeatherNotificationWorkflow:
    """Generate a weather message, resolve push tokens, send the batch."""

    def __init__(
        self,
        weather: WeatherService,
        push: PushService,
        store: Optional[AbstractOrderStore],
        city: Optional[str] = None,
        provider: Optional[str] = None,
    ):
        self.weather = weather
        self.push = push
        self.store = store
        self.city = city
        self.provider = provider

    async def run(self) -> WorkflowResult:
        generated = await self.weather.get_weather_and_message(self.city, self.provider)
        info, note = generated["weatherInfo"], generated["notification"]
        log.info("Weather: %s, %s, %s°C (rainy=%s)", info["city"], info["description"],
                 info["temperature"], info["isRainy"])
        log.info("Notification [%s]: %s / %s", generated["provider"], note["title"], note["body"])

        tokens = await asyncio.to_thread(collect_push_tokens, self.store)
        if not tokens:
            log.warning("No FCM tokens found; weather notification not sent")
            return WorkflowResult(weather=generated)

        push = await self.push.send_push(tokens, note["title"], note["body"])
        return WorkflowResult(weather=generated, tokens=len(tokens), push=push)


# ─── Scheduler ────────────────────────────────────────────────────────────────

class WeatherScheduler:

    def __init__(
        self,
        workflow: WeatherNotificationWorkflow,
        timezone: str = "Asia/Kolkata",
        window_start: int = 9,
        window_end: int = 21,
        check_interval: float = CHECK_INTERVAL_SEC,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.workflow = workflow
        self.tz = ZoneInfo(timezone)
        self.window_start = window_start
        self.window_end = window_end
        self.check_interval = check_interval
        self._clock = clock or (lambda: datetime.now(self.tz))

        self.running = False
        self.notification_count = 0
        self.last_notification_time: Optional[datetime] = None
        self._last_slot: Optional[tuple[date, int]] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._fires: set[asyncio.Task] = set()

    # ─── Time helpers ──────────────────────────────────────────────────────

    def now(self) -> datetime:
        return self._clock().astimezone(self.tz)

    def is_within_window(self, moment: Optional[datetime] = None) -> bool:
        hour = (moment or self.now()).hour
        return self.window_start <= hour < self.window_end

    def claim_slot(self, moment: Optional[datetime] = None) -> bool:
        """True (once per date+hour) when `moment` is minute 0 of an in-window hour."""
        moment = moment or self.now()
        if moment.minute != 0 or not self.is_within_window(moment):
            return False
        slot = (moment.date(), moment.hour)
        if slot == self._last_slot:
            return False
        self._last_slot = slot
        return True

    # ─── Firing ────────────────────────────────────────────────────────────

    async def fire(self, reason: str = "hourly"):
        log.info("Weather notification #%d (%s) at %s", self.notification_count + 1,
                 reason, self.now().strftime("%H:%M:%S"))
        try:
            result = await self.workflow.run()
        except Exception as exc:
            log.error("Weather notification workflow failed: %s", exc)
            return None

        if result.dispatched:
            self.notification_count += 1
            self.last_notification_time = self.now()
            log.info("Weather notification dispatched (%s, %d/%d delivered); total today: %d",
                     result.push.outcome.value, result.push.successful, result.push.total,
                     self.notification_count)
        return result

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._fires.add(task)
        task.add_done_callback(self._fires.discard)
        return task

    async def _run_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.check_interval)
            if self.running and self.claim_slot():
                log.info("Hourly trigger at %d:00", self.now().hour)
                self._spawn(self.fire("hourly"))

    # ─── Public API ────────────────────────────────────────────────────────

    def start(self) -> bool:
        """Must be called from inside the event loop."""
        if self.running:
            log.warning("Weather scheduler is already running")
            return False
        self.running = True
        log.info("Starting weather scheduler: every hour %d:00-%d:00 (%s)",
                 self.window_start, self.window_end, self.tz.key)

        now = self.now()
        if self.is_within_window(now):
            log.info("Within notification hours; sending initial notification")
            self._last_slot = (now.date(), now.hour)
            self._spawn(self.fire("startup"))
        else:
            log.info("Outside notification hours; waiting for %d:00", self.window_start)

        self._loop_task = asyncio.get_running_loop().create_task(
            self._run_loop(), name="weather_scheduler"
        )

        def _on_done(t: asyncio.Task) -> None:
            if t.cancelled():
                return
            exc = t.exception()
            if exc:
                log.critical("weather_scheduler task died unexpectedly: %s", exc)

        self._loop_task.add_done_callback(_on_done)
        return True

    def stop(self) -> bool:
        """Cancel the periodic check.  A notification already in flight completes."""
        if not self.running:
            log.warning("Weather scheduler is not running")
            return False
        self.running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
        log.info("Weather scheduler stopped")
        return True

    async def manual_trigger(self):
        log.info("Manual weather notification trigger")
        return await self.fire("manual")

    def reset_count(self) -> None:
        self.notification_count = 0
        log.info("Notification count reset to 0")

    async def drain(self) -> None:
        """Await notifications already in flight."""
        while self._fires:
            await asyncio.gather(*list(self._fires), return_exceptions=True)

    def next_notification_time(self, moment: Optional[datetime] = None) -> str:
        hour = (moment or self.now()).hour
        if hour < self.window_start:
            return f"{self.window_start}:00"
        if hour + 1 < self.window_end:
            return f"{hour + 1}:00"
        return f"{self.window_start}:00 tomorrow"

    def status(self) -> dict:
        now = self.now()
        return {
            "isRunning":            self.running,
            "isActive":             self.running and self.is_within_window(now),
            "currentTime":          now.strftime("%I:%M:%S %p"),
            "currentHour":          now.hour,
            "startTime":            self.window_start,
            "endTime":              self.window_end,
            "timezone":             self.tz.key,
            "notificationCount":    self.notification_count,
            "lastNotificationTime": (
                self.last_notification_time.isoformat() if self.last_notification_time else None
            ),
            "nextNotificationTime": self.next_notification_time(now),
        }
