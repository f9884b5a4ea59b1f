"""
Payment Webhook Reconciler
==========================

Applies payment-provider webhook events to bookings at most once, assuming
the provider may redeliver, reorder, or omit identifying metadata.

Per event
---------
1. Verify the ``Stripe-Signature`` header (HMAC-SHA256 over ``"{t}.{body}"``).
   Bad signature or unparsable body: reject, nothing recorded.
2. Ledger lookup by provider event id.  Seen before: duplicate, return.
3. Insert the ledger row (``processed=False``) and commit *before* touching
   the booking, so a crash mid-way leaves a visible pending row.
4. Resolve the booking: metadata ``booking_code`` first, then
   ``booking_id`` / ``client_reference_id``, then (``payment_intent.*``) the
   stored payment reference.  Unresolvable: log, acknowledge, no mutation.
5. Success events: one conditional UPDATE (only if not already paid) via the
   booking code, falling back to the booking id only when the code matched
   no row.
6. Mark the ledger row processed; history, change feed and notifications
   are best effort.
7. Failure events: skipped if already paid (stale), else payment failed and
   ride cancelled.

``payment_intent.succeeded`` is a backup path for
``checkout.session.completed``; the not-already-paid condition on the UPDATE
is what keeps the two from applying the same charge twice.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.domain.enums import (
    ActorRole,
    PaymentConfirmationStatus,
    PaymentStatus,
    StatusCode,
)
from src.infrastructure.change_feed import BOOKINGS_TABLE, BookingChange, ChangeFeed
from src.infrastructure.models import BookingModel
from src.infrastructure.repositories import (
    BookingRepository,
    WebhookEventRepository,
    booking_snapshot,
    to_entity,
)
from src.services.history import StatusHistoryRecorder
from src.services.notifications import NotificationSink

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"

SUCCESS_EVENTS = frozenset({CHECKOUT_COMPLETED, PAYMENT_INTENT_SUCCEEDED})
FAILURE_EVENTS = frozenset({PAYMENT_INTENT_FAILED})

SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


# ── Errors ────────────────────────────────────────────────────────────


class WebhookSignatureError(Exception):
    """The request is not an authentic provider event.  Maps to HTTP 400."""


class InvalidWebhookPayload(WebhookSignatureError):
    """Signed, but the body is not a well-formed event."""


class WebhookProcessingError(Exception):
    """An authentic event could not be applied.  Maps to HTTP 5xx (provider retries)."""


class WebhookNotConfigured(WebhookProcessingError):
    pass


# ── Signature verification ────────────────────────────────────────────


class _EventData(BaseModel):
    object: dict[str, Any]


class _EventEnvelope(BaseModel):
    id: str
    type: str
    created: Optional[int] = None
    data: _EventData


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    data_object: dict[str, Any]
    raw: dict[str, Any] = field(default_factory=dict)


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header value for *payload*."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(payload, secret, timestamp)}"


def _parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp: Optional[int] = None
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Malformed signature timestamp") from None
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)
    if timestamp is None or not signatures:
        raise WebhookSignatureError("Signature header missing timestamp or v1 signature")
    return timestamp, signatures


def construct_event(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> WebhookEvent:
    """Verify *payload* against *signature_header* and parse it into a ``WebhookEvent``."""
    if not signature_header:
        raise WebhookSignatureError("Missing signature header")

    timestamp, signatures = _parse_signature_header(signature_header)
    expected = compute_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("No signature matches the expected signature")

    now = time.time() if now is None else now
    if tolerance and timestamp < now - tolerance:
        raise WebhookSignatureError("Signature timestamp outside the tolerance zone")

    try:
        raw = json.loads(payload.decode("utf-8"))
        envelope = _EventEnvelope.model_validate(raw)
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise InvalidWebhookPayload(f"Malformed webhook payload: {exc}") from exc

    return WebhookEvent(
        id=envelope.id,
        type=envelope.type,
        data_object=envelope.data.object,
        raw=raw,
    )


# ── Reconciliation ────────────────────────────────────────────────────


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    ALREADY_PAID = "already_paid"
    BOOKING_NOT_FOUND = "booking_not_found"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconcileResult:
    event_id: str
    event_type: str
    outcome: Outcome
    booking_id: Optional[str] = None
    status_code: Optional[str] = None
    snapshot: Optional[dict[str, Any]] = None

    @property
    def duplicate(self) -> bool:
        return self.outcome is Outcome.DUPLICATE


@dataclass(frozen=True)
class _BookingRef:
    booking_code: Optional[str] = None
    booking_id: Optional[str] = None
    payment_reference: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _booking_ref(event: WebhookEvent) -> _BookingRef:
    obj = event.data_object
    metadata = obj.get("metadata") or {}
    booking_id = metadata.get("booking_id")
    if event.type == CHECKOUT_COMPLETED:
        booking_id = booking_id or obj.get("client_reference_id")
        reference = None
    else:
        reference = obj.get("id")
    return _BookingRef(
        booking_code=metadata.get("booking_code") or None,
        booking_id=booking_id or None,
        payment_reference=reference,
    )


class PaymentWebhookReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        secret: str,
        recorder: StatusHistoryRecorder,
        feed: ChangeFeed,
        notifier: NotificationSink,
        provider: str = "stripe",
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._sessions = session_factory
        self._secret = secret
        self._recorder = recorder
        self._feed = feed
        self._notifier = notifier
        self.provider = provider
        self._tolerance = tolerance
        self._clock = clock

    async def handle(self, payload: bytes, signature_header: Optional[str]) -> ReconcileResult:
        """Verify and process one raw webhook delivery."""
        if not self._secret:
            raise WebhookNotConfigured("Webhook signing secret is not configured")
        event = construct_event(payload, signature_header, self._secret, self._tolerance)
        logger.info("Webhook verified: %s (%s)", event.type, event.id)
        return await self.process(event)

    async def process(self, event: WebhookEvent) -> ReconcileResult:
        record_id = await self._claim(event)
        if record_id is None:
            logger.info("Event %s already recorded; ignoring duplicate", event.id)
            return ReconcileResult(event.id, event.type, Outcome.DUPLICATE)

        try:
            result = await self._apply(event)
            if result.outcome is Outcome.BOOKING_NOT_FOUND:
                # Left unprocessed so it shows up for manual reconciliation
                await self._note_error(record_id, Outcome.BOOKING_NOT_FOUND.value)
            else:
                await self._mark_processed(record_id, result)
        except Exception as exc:
            logger.exception("Processing webhook %s (%s) failed", event.id, event.type)
            await self._note_error(record_id, f"{type(exc).__name__}: {exc}")
            raise WebhookProcessingError(f"Could not process event {event.id}") from exc

        if result.outcome is Outcome.APPLIED:
            await self._after_apply(event, result)
        return result

    # ── ledger ────────────────────────────────────────────────────────

    async def _claim(self, event: WebhookEvent) -> Optional[int]:
        """Record the event; None if the ledger already holds it."""
        try:
            async with self._sessions() as session, session.begin():
                ledger = WebhookEventRepository(session)
                if await ledger.get_by_event_id(event.id) is not None:
                    return None
                record = await ledger.create(
                    provider=self.provider,
                    provider_event_id=event.id,
                    event_type=event.type,
                    payload=event.raw,
                )
                return record.id
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            return None

    async def _mark_processed(self, record_id: int, result: ReconcileResult) -> None:
        note = None if result.outcome is Outcome.APPLIED else result.outcome.value
        async with self._sessions() as session, session.begin():
            await WebhookEventRepository(session).mark_processed(
                record_id, self._clock(), note
            )

    async def _note_error(self, record_id: int, error: str) -> None:
        try:
            async with self._sessions() as session, session.begin():
                await WebhookEventRepository(session).record_error(record_id, error)
        except Exception:
            logger.exception("Could not annotate webhook ledger row %s", record_id)

    # ── booking mutation ──────────────────────────────────────────────

    async def _apply(self, event: WebhookEvent) -> ReconcileResult:
        if event.type in SUCCESS_EVENTS:
            return await self._apply_success(event)
        if event.type in FAILURE_EVENTS:
            return await self._apply_failure(event)
        logger.info("Unhandled event type %s (%s)", event.type, event.id)
        return ReconcileResult(event.id, event.type, Outcome.IGNORED)

    async def _resolve(
        self, repo: BookingRepository, ref: _BookingRef
    ) -> Optional[BookingModel]:
        if ref.booking_code:
            booking = await repo.get_by_code(ref.booking_code)
            if booking is not None:
                return booking
        if ref.booking_id:
            booking = await repo.get_by_id(ref.booking_id)
            if booking is not None:
                return booking
        if ref.payment_reference:
            return await repo.get_by_payment_reference(ref.payment_reference)
        return None

    def _not_found(self, event: WebhookEvent, ref: _BookingRef) -> ReconcileResult:
        logger.warning(
            "Webhook %s (%s): no booking for code=%s id=%s reference=%s",
            event.id,
            event.type,
            ref.booking_code,
            ref.booking_id,
            ref.payment_reference,
        )
        return ReconcileResult(event.id, event.type, Outcome.BOOKING_NOT_FOUND)

    async def _apply_success(self, event: WebhookEvent) -> ReconcileResult:
        obj = event.data_object
        ref = _booking_ref(event)
        now = self._clock()

        async with self._sessions() as session, session.begin():
            repo = BookingRepository(session)
            booking = await self._resolve(repo, ref)
            if booking is None:
                return self._not_found(event, ref)
            if to_entity(booking).is_paid:
                logger.info("Booking %s already paid; %s skipped", booking.id, event.id)
                return ReconcileResult(
                    event.id, event.type, Outcome.ALREADY_PAID, booking_id=booking.id
                )

            if event.type == CHECKOUT_COMPLETED:
                amount = obj.get("amount_total")
                reference = obj.get("payment_intent") or obj.get("id")
            else:
                amount = obj.get("amount_received") or obj.get("amount")
                reference = obj.get("id")
            currency = (obj.get("currency") or booking.currency or "usd").lower()

            fields = {
                "payment_status": PaymentStatus.PAID.value,
                "paid_at": now,
                "paid_amount_minor": (
                    int(amount) if amount is not None else booking.offer_price_minor
                ),
                "currency": currency,
                "payment_provider": self.provider,
                "payment_reference": reference,
                "payment_confirmation_status": PaymentConfirmationStatus.ALL_SET.value,
                "updated_at": now,
            }
            # Write through the code the event carried; the id is only tried when
            # that code matched no row
            updated = None
            if ref.booking_code:
                updated = await repo.update_fields_by_code(
                    ref.booking_code, fields, unless_paid=True
                )
            if updated is None and ref.booking_code != booking.booking_code:
                updated = await repo.update_fields(booking.id, fields, unless_paid=True)
            if updated is None:
                return ReconcileResult(
                    event.id, event.type, Outcome.ALREADY_PAID, booking_id=booking.id
                )
            snapshot = booking_snapshot(updated)

        logger.info(
            "Booking %s paid via %s (%s %s)",
            updated.id,
            event.type,
            fields["paid_amount_minor"],
            currency,
        )
        return ReconcileResult(
            event.id,
            event.type,
            Outcome.APPLIED,
            booking_id=updated.id,
            status_code=StatusCode.ALL_SET.value,
            snapshot=snapshot,
        )

    async def _apply_failure(self, event: WebhookEvent) -> ReconcileResult:
        ref = _booking_ref(event)
        now = self._clock()

        async with self._sessions() as session, session.begin():
            repo = BookingRepository(session)
            booking = await self._resolve(repo, ref)
            if booking is None:
                return self._not_found(event, ref)
            if to_entity(booking).is_paid:
                logger.info(
                    "Stale failure %s for paid booking %s; skipped", event.id, booking.id
                )
                return ReconcileResult(
                    event.id, event.type, Outcome.ALREADY_PAID, booking_id=booking.id
                )

            updated = await repo.update_fields(
                booking.id,
                {
                    "payment_status": PaymentStatus.FAILED.value,
                    "ride_status": StatusCode.CANCELLED.value,
                    "updated_at": now,
                },
                unless_paid=True,
            )
            if updated is None:
                return ReconcileResult(
                    event.id, event.type, Outcome.ALREADY_PAID, booking_id=booking.id
                )
            snapshot = booking_snapshot(updated)

        logger.info("Booking %s payment failed; ride cancelled", updated.id)
        return ReconcileResult(
            event.id,
            event.type,
            Outcome.APPLIED,
            booking_id=updated.id,
            status_code="payment_failed",
            snapshot=snapshot,
        )

    # ── best-effort follow-ups ────────────────────────────────────────

    async def _after_apply(self, event: WebhookEvent, result: ReconcileResult) -> None:
        booking_id = result.booking_id
        assert booking_id is not None and result.status_code is not None

        try:
            await self._feed.publish(
                BookingChange(
                    booking_id=booking_id,
                    table=BOOKINGS_TABLE,
                    record=result.snapshot or {},
                )
            )
        except Exception:
            logger.exception("Could not publish payment change for %s", booking_id)

        try:
            await self._recorder.record(
                booking_id,
                ActorRole.SYSTEM,
                result.status_code,
                metadata={
                    "provider": self.provider,
                    "provider_event_id": event.id,
                    "event_type": event.type,
                    "payment_reference": (result.snapshot or {}).get("payment_reference"),
                    "paid_amount_minor": (result.snapshot or {}).get("paid_amount_minor"),
                },
            )
        except Exception:
            logger.exception("History append failed for payment on %s", booking_id)

        payload = {"event_type": event.type, "provider_event_id": event.id}
        if result.status_code == StatusCode.ALL_SET.value:
            recipients = (ActorRole.PASSENGER, ActorRole.DRIVER)
            notification = "payment_confirmed"
        else:
            recipients = (ActorRole.PASSENGER,)
            notification = "payment_failed"
        for role in recipients:
            await self._notifier.notify(notification, booking_id, role.value, payload)
