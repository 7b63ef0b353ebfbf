#!/usr/bin/env python3
"""
Notifier API — FastAPI surface for the Pivokart notification dashboard.

Endpoints
─────────
Open:
  GET  /                          dashboard (public/index.html) or health
  GET  /health                    channel configuration + listener/scheduler state
  POST /login                     {email, password} → session cookie
  POST /logout                    clear session
  GET  /auth-check                {authenticated: bool}

Session required:
  POST /test-notification         WhatsApp customer + admin send for a sample order
  GET  /recent-orders             newest order documents
  POST /weather-notification      weather + AI message → FCM to every known token
  POST /test-fcm                  FCM send (all tokens, or {"token": ...})
  GET  /fcm-tokens                masked push tokens
  GET  /api-keys                  masked weather / AI provider keys
  POST /set-multi-api-keys        save openweather + gemini + openai keys
  GET  /scheduler/status
  POST /scheduler/start | /scheduler/stop | /scheduler/trigger | /scheduler/reset

Every response is a JSON envelope {"success": bool, ...}: 401 when the
session is missing, 400 on validation failures, 500 with {"error": ...} on
anything unexpected.

Run:
    uvicorn notifier_api:app --host 0.0.0.0 --port 3000
    python3 run_notifier.py            # same, plus CLI flags
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api_keys import SERVICES, ApiKeyStore
from config import Settings
from firestore_store import build_firestore_store, firebase_ready, initialize_firebase
from notifications import ChatTransportError, mask
from order_listener import OrderListener
from order_normalizer import normalize
from order_store import AbstractOrderStore, InMemoryOrderStore, set_store
from push_service import PushService
from recipient_resolver import collect_push_tokens, fetch_recent_orders
from redis_store import RedisOrderStore
from weather_scheduler import WeatherNotificationWorkflow, WeatherScheduler
from weather_service import PROVIDERS, WeatherService, WeatherServiceError
from whatsapp_service import WhatsAppService

log = logging.getLogger("pivokart.api")

PUBLIC_DIR = Path(__file__).parent / "public"

NO_TOKENS_SUGGESTION = (
    "Make sure your orders have FCM tokens in author.fcmToken, fcmToken, "
    "customer.fcmToken, or user.fcmToken fields"
)


# ─── Service wiring ───────────────────────────────────────────────────────────

@dataclass
class Services:
    settings:  Settings
    store:     Optional[AbstractOrderStore]
    whatsapp:  WhatsAppService
    push:      PushService
    keys:      ApiKeyStore
    weather:   WeatherService
    listener:  OrderListener
    scheduler: WeatherScheduler
    start_scheduler: bool = True

    async def startup(self) -> None:
        self.listener.start_listening()
        if self.start_scheduler:
            self.scheduler.start()
        log.info("Notifier started (store=%s, whatsapp=%s, firebase=%s)",
                 self.settings.store_backend,
                 "configured" if self.whatsapp.configured else "not configured",
                 "ready" if self.push.configured else "not configured")

    async def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.stop()
        self.listener.close()
        await self.listener.drain()
        await self.scheduler.drain()
        if self.store is not None:
            await asyncio.to_thread(self.store.close)
        log.info("Notifier stopped")


def build_store(settings: Settings) -> Optional[AbstractOrderStore]:
    if settings.store_backend == "memory":
        return InMemoryOrderStore(collection=settings.orders_collection)
    if settings.store_backend == "redis":
        initialize_firebase(settings)          # FCM still goes through Firebase
        return RedisOrderStore(url=settings.redis_url, collection=settings.orders_collection)
    return build_firestore_store(settings)


def build_services(
    settings: Settings,
    store: Optional[AbstractOrderStore] = None,
    whatsapp: Optional[WhatsAppService] = None,
    push: Optional[PushService] = None,
    keys: Optional[ApiKeyStore] = None,
    weather: Optional[WeatherService] = None,
    start_scheduler: bool = True,
) -> Services:
    """Build every service from Settings; any of them can be passed in instead."""
    store = store if store is not None else build_store(settings)
    set_store(store)
    whatsapp = whatsapp or WhatsAppService(settings)
    push = push or PushService()
    keys = keys or ApiKeyStore(settings.api_keys_path)
    weather = weather or WeatherService(
        keys,
        city=settings.weather_city,
        provider=settings.weather_provider,
        gemini_model=settings.gemini_model,
        openai_model=settings.openai_model,
        brand=settings.brand_name,
    )
    workflow = WeatherNotificationWorkflow(
        weather, push, store, city=settings.weather_city, provider=settings.weather_provider,
    )
    return Services(
        settings=settings,
        store=store,
        whatsapp=whatsapp,
        push=push,
        keys=keys,
        weather=weather,
        listener=OrderListener(store, whatsapp),
        scheduler=WeatherScheduler(
            workflow,
            timezone=settings.timezone,
            window_start=settings.window_start,
            window_end=settings.window_end,
        ),
        start_scheduler=start_scheduler,
    )


# ─── Envelope errors ──────────────────────────────────────────────────────────

class ApiError(Exception):
    def __init__(self, status: int, error: str, **extra):
        super().__init__(error)
        self.status = status
        self.error = error
        self.extra = extra


def _envelope(status: int, error: str, **extra) -> JSONResponse:
    return JSONResponse({"success": False, "error": error, **extra}, status_code=status)


async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
    return _envelope(exc.status, exc.error, **exc.extra)


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _envelope(exc.status_code, str(exc.detail))


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(400, "Invalid request", details=jsonable_encoder(exc.errors()))


async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _envelope(500, str(exc) or type(exc).__name__)


# ─── Dependencies ─────────────────────────────────────────────────────────────

def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ApiError(503, "Services not initialised")
    return services


def require_login(request: Request) -> None:
    if not request.session.get("authenticated"):
        raise ApiError(401, "Not authenticated")


# ─── Request bodies ───────────────────────────────────────────────────────────

class LoginRequest(BaseModel):
    email:    str = ""
    password: str = ""


class TestNotificationRequest(BaseModel):
    phone: Optional[str] = None


class WeatherRequest(BaseModel):
    city:     Optional[str] = None
    provider: str = "gemini"


class FcmTestRequest(BaseModel):
    title: str = "Test Notification"
    body:  str = "This is a test FCM notification"
    token: Optional[str] = None


class ApiKeysRequest(BaseModel):
    openweather: Optional[str] = None
    gemini:      Optional[str] = None
    openai:      Optional[str] = None


# ─── Open routes ──────────────────────────────────────────────────────────────

public = APIRouter()


def _health(services: Services) -> dict:
    listener = services.listener
    return {
        "success":   True,
        "status":    "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "firebase":  "connected" if firebase_ready() else "not configured",
        "whatsapp":  "configured" if services.whatsapp.configured else "not configured",
        "store":     services.settings.store_backend if services.store else "not configured",
        "listener": {
            "active":    listener.active,
            "startedAt": listener.started_at.isoformat() if listener.started_at else None,
            "notified":  listener.notified_count,
            "pending":   listener.pending,
        },
        "scheduler": services.scheduler.running,
    }


@public.get("/")
def index(services: Services = Depends(get_services)):
    page = PUBLIC_DIR / "index.html"
    if page.exists():
        return FileResponse(str(page))
    return _health(services)


@public.get("/health")
def health(services: Services = Depends(get_services)):
    return _health(services)


@public.post("/login")
def login(body: LoginRequest, request: Request, services: Services = Depends(get_services)):
    settings = services.settings
    if not (settings.admin_login_email and settings.admin_login_password):
        log.warning("Login attempted but ADMIN_LOGIN_EMAIL / ADMIN_LOGIN_PASSWORD are not set")
        raise ApiError(401, "Login not configured")
    ok = (
        hmac.compare_digest(body.email.strip().lower(), settings.admin_login_email.strip().lower())
        and hmac.compare_digest(body.password, settings.admin_login_password)
    )
    if not ok:
        raise ApiError(401, "Invalid credentials")
    request.session["authenticated"] = True
    request.session["email"] = settings.admin_login_email
    return {"success": True}


@public.post("/logout")
def logout(request: Request):
    request.session.clear()
    return {"success": True}


@public.get("/auth-check")
def auth_check(request: Request):
    return {"success": True, "authenticated": bool(request.session.get("authenticated"))}


# ─── Protected routes ─────────────────────────────────────────────────────────

protected = APIRouter(dependencies=[Depends(require_login)])


@protected.post("/test-notification")
async def send_test_notification(
    body: Optional[TestNotificationRequest] = None,
    services: Services = Depends(get_services),
):
    body = body or TestNotificationRequest()
    admins = services.settings.admin_numbers
    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    order = normalize({
        "orderId":         "TEST-001",
        "customerName":    "Test Customer",
        "customerPhone":   body.phone or (admins[0] if admins else ""),
        "totalAmount":     850,
        "deliveryAddress": "Test Address, City",
        "items": [
            {"name": "Butter Chicken", "quantity": 2},
            {"name": "Naan", "quantity": 3},
            {"name": "Rice", "quantity": 1},
        ],
    }, doc_id=f"test-order-{stamp}")

    try:
        customer = await services.whatsapp.send_customer_notification(order)
        admin = await services.whatsapp.send_admin_notification(order)
    except ChatTransportError as exc:
        log.error("Test notification failed: %s", exc)
        raise ApiError(500, str(exc))

    return {
        "success":        True,
        "message":        "Test notifications sent",
        "order":          order.to_dict(),
        "customerResult": customer.to_dict(),
        "adminResult":    admin.to_dict(),
    }


@protected.get("/recent-orders")
async def recent_orders(limit: int = 10, services: Services = Depends(get_services)):
    if services.store is None:
        raise ApiError(503, "Order store not configured")
    orders = await asyncio.to_thread(fetch_recent_orders, services.store, limit)
    return {"success": True, "count": len(orders), "orders": orders}


@protected.post("/weather-notification")
async def weather_notification(
    body: Optional[WeatherRequest] = None,
    services: Services = Depends(get_services),
):
    body = body or WeatherRequest()
    if body.provider not in PROVIDERS:
        raise ApiError(400, 'Invalid provider. Must be either "gemini" or "openai"',
                       validProviders=list(PROVIDERS))

    city = body.city or services.settings.weather_city
    log.info("Weather notification for %s using %s", city, body.provider)
    try:
        generated = await services.weather.get_weather_and_message(city, body.provider)
    except WeatherServiceError as exc:
        log.error("Weather notification failed: %s", exc)
        raise ApiError(500, str(exc))

    tokens = await asyncio.to_thread(collect_push_tokens, services.store)
    if not tokens:
        return {
            "success":      False,
            "error":        "No customer FCM tokens found",
            "suggestion":   NO_TOKENS_SUGGESTION,
            "weatherInfo":  generated["weatherInfo"],
            "notification": generated["notification"],
            "provider":     generated["provider"],
        }

    note = generated["notification"]
    push = await services.push.send_push(tokens, note["title"], note["body"])
    return {
        "success":      True,
        "message":      f"Weather notification sent successfully using {body.provider}!",
        "weatherInfo":  generated["weatherInfo"],
        "notification": note,
        "provider":     generated["provider"],
        "fcmResult":    push.to_dict(),
    }


@protected.post("/test-fcm")
async def send_test_fcm(
    body: Optional[FcmTestRequest] = None,
    services: Services = Depends(get_services),
):
    body = body or FcmTestRequest()
    if body.token:
        tokens = {body.token}
    else:
        tokens = await asyncio.to_thread(collect_push_tokens, services.store)
    if not tokens:
        return {"success": False, "error": "No customer FCM tokens found",
                "suggestion": NO_TOKENS_SUGGESTION}

    push = await services.push.send_push(tokens, body.title, body.body)
    message = (
        f"Test notification sent to {push.successful} devices" if push.success
        else f"Failed to send test notifications: {push.error or 'all sends failed'}"
    )
    return {"success": push.success, "fcmResult": push.to_dict(), "message": message}


@protected.get("/fcm-tokens")
async def fcm_tokens(services: Services = Depends(get_services)):
    tokens = await asyncio.to_thread(collect_push_tokens, services.store)
    return {
        "success": True,
        "count":   len(tokens),
        "tokens":  sorted(mask(t) for t in tokens),
        "message": f"Found {len(tokens)} FCM tokens",
    }


@protected.get("/api-keys")
def api_keys(services: Services = Depends(get_services)):
    return {
        "success":    True,
        "keys":       services.keys.masked(),
        "configured": services.keys.configured_count(),
        "total":      len(SERVICES),
    }


@protected.post("/set-multi-api-keys")
def set_multi_api_keys(body: ApiKeysRequest, services: Services = Depends(get_services)):
    updates = {s: (getattr(body, s) or "").strip() for s in SERVICES}
    missing = [s for s, v in updates.items() if not v]
    if missing:
        raise ApiError(400, "All three API keys are required (openweather, gemini, openai)",
                       missing=missing)
    services.keys.set_keys(updates)
    return {
        "success": True,
        "message": "API keys saved successfully",
        "keys":    {s: v[:8] + "..." for s, v in updates.items()},
    }


@protected.get("/scheduler/status")
def scheduler_status(services: Services = Depends(get_services)):
    return {"success": True, "status": services.scheduler.status()}


@protected.post("/scheduler/start")
async def scheduler_start(services: Services = Depends(get_services)):
    started = services.scheduler.start()
    return {
        "success": True,
        "message": "Weather scheduler started" if started else "Weather scheduler is already running",
        "status":  services.scheduler.status(),
    }


@protected.post("/scheduler/stop")
async def scheduler_stop(services: Services = Depends(get_services)):
    stopped = services.scheduler.stop()
    return {
        "success": True,
        "message": "Weather scheduler stopped" if stopped else "Weather scheduler is not running",
        "status":  services.scheduler.status(),
    }


@protected.post("/scheduler/trigger")
async def scheduler_trigger(services: Services = Depends(get_services)):
    result = await services.scheduler.manual_trigger()
    return {
        "success": result is not None,
        "message": "Manual trigger executed" if result is not None
                   else "Manual trigger failed; see server log",
        "result":  result.to_dict() if result is not None else None,
        "status":  services.scheduler.status(),
    }


@protected.post("/scheduler/reset")
async def scheduler_reset(services: Services = Depends(get_services)):
    services.scheduler.reset_count()
    return {"success": True, "message": "Notification count reset",
            "status": services.scheduler.status()}


# ─── App factory ──────────────────────────────────────────────────────────────

def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Services passed in are started/stopped by the app lifespan; otherwise
    they are built from Settings when the app starts.
    """
    settings = services.settings if services else (settings or Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.services is None:
            app.state.services = build_services(settings)
        await app.state.services.startup()
        try:
            yield
        finally:
            await app.state.services.shutdown()

    app = FastAPI(
        title="Pivokart Notifier API",
        description="Order WhatsApp notifications, FCM weather pushes, scheduler control",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret, max_age=24 * 3600)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],      # lock down to the dashboard origin in production
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ApiError, _api_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(Exception, _unexpected_error)

    app.include_router(public)
    app.include_router(protected)
    if PUBLIC_DIR.is_dir():
        app.mount("/static", StaticFiles(directory=str(PUBLIC_DIR)), name="static")
    return app


app = create_app()
