"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Booking updates are single ``UPDATE``
statements so every status change lands as one atomic write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy import and_, inspect, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from .models import BookingModel, BookingStatusHistoryModel, WebhookEventModel
from src.domain.entities import Booking, StatusHistoryEntry
from src.domain.enums import (
    AWAITING_DRIVER_STATUSES,
    PaymentConfirmationStatus,
    PaymentStatus,
)


def booking_snapshot(booking: BookingModel) -> dict[str, Any]:
    """Plain dict of every column, as pushed to change-feed subscribers."""
    return {
        attr.key: getattr(booking, attr.key)
        for attr in inspect(booking).mapper.column_attrs
    }


def to_entity(booking: BookingModel) -> Booking:
    return Booking(
        id=booking.id,
        booking_code=booking.booking_code,
        passenger_id=booking.passenger_id,
        driver_id=booking.driver_id,
        ride_status=booking.ride_status,
        status_driver=booking.status_driver,
        status_passenger=booking.status_passenger,
        payment_confirmation_status=booking.payment_confirmation_status,
        ride_stage=booking.ride_stage,
        payment_status=booking.payment_status,
        paid_at=booking.paid_at,
    )


def to_entry(row: BookingStatusHistoryModel) -> StatusHistoryEntry:
    return StatusHistoryEntry(
        sequence=row.id,
        booking_id=row.booking_id,
        actor_role=row.actor_role,
        status_code=row.status_code,
        label=row.label,
        created_at=row.created_at,
        metadata=dict(row.details or {}),
    )


def _not_paid() -> ColumnElement[bool]:
    return and_(
        or_(
            BookingModel.payment_status.is_(None),
            BookingModel.payment_status != PaymentStatus.PAID.value,
        ),
        BookingModel.paid_at.is_(None),
    )


def awaiting_driver(statuses: frozenset[str]) -> ColumnElement[bool]:
    """Still waiting on a driver: an awaiting status and no payment settled."""
    return and_(
        BookingModel.ride_status.in_(sorted(statuses)),
        _not_paid(),
        or_(
            BookingModel.payment_confirmation_status.is_(None),
            BookingModel.payment_confirmation_status
            != PaymentConfirmationStatus.ALL_SET.value,
        ),
    )


def stale_awaiting_driver(
    statuses: frozenset[str], updated_before: datetime
) -> ColumnElement[bool]:
    return and_(awaiting_driver(statuses), BookingModel.updated_at < updated_before)


def open_for_driver(driver_id: str) -> ColumnElement[bool]:
    """Waiting on a driver and not assigned to anyone else."""
    return and_(
        awaiting_driver(AWAITING_DRIVER_STATUSES),
        or_(BookingModel.driver_id.is_(None), BookingModel.driver_id == driver_id),
    )


class BookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields: Any) -> BookingModel:
        booking = BookingModel(**fields)
        self.session.add(booking)
        await self.session.flush()
        await self.session.refresh(booking)
        return booking

    async def get_by_id(self, booking_id: str) -> Optional[BookingModel]:
        return await self.session.get(BookingModel, booking_id)

    async def get_by_code(self, booking_code: str) -> Optional[BookingModel]:
        result = await self.session.execute(
            select(BookingModel).where(BookingModel.booking_code == booking_code)
        )
        return result.scalar_one_or_none()

    async def get_by_payment_reference(self, reference: str) -> Optional[BookingModel]:
        result = await self.session.execute(
            select(BookingModel)
            .where(BookingModel.payment_reference == reference)
            .order_by(BookingModel.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def update_fields(
        self,
        booking_id: str,
        fields: Mapping[str, Any],
        *,
        unless_paid: bool = False,
        only_if: Optional[ColumnElement[bool]] = None,
    ) -> Optional[BookingModel]:
        """Apply *fields* in one UPDATE.  Returns the fresh row, or None if nothing matched."""
        return await self._update_where(
            BookingModel.id == booking_id, fields, unless_paid, only_if
        )

    async def update_fields_by_code(
        self,
        booking_code: str,
        fields: Mapping[str, Any],
        *,
        unless_paid: bool = False,
    ) -> Optional[BookingModel]:
        return await self._update_where(
            BookingModel.booking_code == booking_code, fields, unless_paid
        )

    async def _update_where(
        self,
        criterion: ColumnElement[bool],
        fields: Mapping[str, Any],
        unless_paid: bool,
        only_if: Optional[ColumnElement[bool]] = None,
    ) -> Optional[BookingModel]:
        stmt = (
            update(BookingModel)
            .where(criterion)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        if unless_paid:
            # Conditional write: a booking that is already paid is left untouched
            stmt = stmt.where(_not_paid())
        if only_if is not None:
            stmt = stmt.where(only_if)
        result = await self.session.execute(stmt)
        if not result.rowcount:
            return None
        refreshed = await self.session.execute(
            select(BookingModel)
            .where(criterion)
            .execution_options(populate_existing=True)
        )
        return refreshed.scalar_one_or_none()

    async def list_awaiting_driver(
        self, statuses: frozenset[str], updated_before: datetime, limit: int = 100
    ) -> list[BookingModel]:
        result = await self.session.execute(
            select(BookingModel)
            .where(stale_awaiting_driver(statuses, updated_before))
            .order_by(BookingModel.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())


class StatusHistoryRepository:
    """Insert and read only."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        *,
        booking_id: str,
        actor_role: str,
        status_code: str,
        label: str,
        metadata: Mapping[str, Any],
        created_at: datetime,
    ) -> BookingStatusHistoryModel:
        row = BookingStatusHistoryModel(
            booking_id=booking_id,
            actor_role=actor_role,
            status_code=status_code,
            label=label,
            details=dict(metadata),
            created_at=created_at,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def list_for_booking(self, booking_id: str) -> list[BookingStatusHistoryModel]:
        result = await self.session.execute(
            select(BookingStatusHistoryModel)
            .where(BookingStatusHistoryModel.booking_id == booking_id)
            .order_by(
                BookingStatusHistoryModel.created_at,
                BookingStatusHistoryModel.id,
            )
        )
        return list(result.scalars().all())


class WebhookEventRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_event_id(self, provider_event_id: str) -> Optional[WebhookEventModel]:
        result = await self.session.execute(
            select(WebhookEventModel).where(
                WebhookEventModel.provider_event_id == provider_event_id
            )
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        provider: str,
        provider_event_id: str,
        event_type: str,
        payload: Mapping[str, Any],
    ) -> WebhookEventModel:
        record = WebhookEventModel(
            provider=provider,
            provider_event_id=provider_event_id,
            event_type=event_type,
            payload=dict(payload),
            processed=False,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def mark_processed(
        self, record_id: int, processed_at: datetime, note: Optional[str] = None
    ) -> None:
        await self.session.execute(
            update(WebhookEventModel)
            .where(WebhookEventModel.id == record_id)
            .values(processed=True, processed_at=processed_at, error=note)
        )

    async def record_error(self, record_id: int, error: str) -> None:
        await self.session.execute(
            update(WebhookEventModel)
            .where(WebhookEventModel.id == record_id)
            .values(error=error[:2000])
        )

    async def list_events(
        self, processed: Optional[bool] = None, limit: int = 100
    ) -> list[WebhookEventModel]:
        query = select(WebhookEventModel).order_by(WebhookEventModel.created_at.desc())
        if processed is not None:
            query = query.where(WebhookEventModel.processed == processed)
        result = await self.session.execute(query.limit(limit))
        return list(result.scalars().all())
