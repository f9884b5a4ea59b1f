"""
FastAPI application factory.

* Registers routes for bookings, payment webhooks and admin.
* Builds the synchronizer, history recorder and webhook reconciler once per
  process and starts / stops the offer-expiry worker via lifespan events.
* Maps domain errors to 404 / 409 and applies rate-limiting.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.api.middleware import limiter
from src.api.routes import admin, bookings, webhooks
from src.config import settings
from src.domain.entities import BookingNotFound, InvalidStateTransition
from src.infrastructure.change_feed import RedisChangeFeed
from src.infrastructure.database import async_session_factory
from src.infrastructure.redis_client import close_redis, get_redis
from src.services.history import StatusHistoryRecorder
from src.services.notifications import RedisNotificationSink
from src.services.payments import PaymentWebhookReconciler
from src.services.status_sync import StatusSynchronizer
from src.workers import expiry as _expiry

logging.basicConfig(level=settings.log_level.upper())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire services on startup; stop the worker and drop subscriptions on shutdown."""
    redis = await get_redis()
    feed = RedisChangeFeed(redis)
    notifier = RedisNotificationSink(redis, settings.notification_queue)
    recorder = StatusHistoryRecorder(async_session_factory, feed)
    synchronizer = StatusSynchronizer(async_session_factory, recorder, feed)

    app.state.recorder = recorder
    app.state.synchronizer = synchronizer
    app.state.reconciler = PaymentWebhookReconciler(
        async_session_factory,
        secret=settings.stripe_webhook_secret,
        recorder=recorder,
        feed=feed,
        notifier=notifier,
        provider=settings.payment_provider,
        tolerance=settings.webhook_tolerance_seconds,
    )

    await _expiry.start_expiry_loop(synchronizer, notifier)
    yield
    await _expiry.stop_expiry_loop()
    await synchronizer.aclose()
    await close_redis()


async def _booking_not_found(request: Request, exc: BookingNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _invalid_transition(
    request: Request, exc: InvalidStateTransition
) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def create_app() -> FastAPI:
    app = FastAPI(
        title="Ride Booking Status Sync API",
        description=(
            "Keeps a booking's ride, driver, passenger and payment status "
            "consistent across both parties, records every change in an "
            "append-only timeline, and reconciles payment-provider webhooks "
            "at most once."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Domain errors
    app.add_exception_handler(BookingNotFound, _booking_not_found)
    app.add_exception_handler(InvalidStateTransition, _invalid_transition)

    # Routers
    app.include_router(bookings.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
