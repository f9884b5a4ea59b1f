"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field, model_validator

from src.domain.enums import ActorRole, RideStage
from src.domain.money import DEFAULT_CURRENCY, to_display


# ── Requests ──────────────────────────────────────────────────────────


class BookingCreateRequest(BaseModel):
    passenger_id: str = Field(..., min_length=1, max_length=64)
    pickup_location: Optional[str] = Field(None, max_length=255)
    dropoff_location: Optional[str] = Field(None, max_length=255)
    pickup_time: Optional[datetime] = None
    estimated_price_minor: Optional[int] = Field(
        None, ge=0, description="Estimated fare in minor units (cents)."
    )
    estimated_price: Optional[Decimal] = Field(
        None,
        ge=0,
        description="Estimated fare in major units; ignored when "
        "estimated_price_minor is also given.",
    )
    currency: str = Field(DEFAULT_CURRENCY, min_length=3, max_length=3)


class StatusUpdateRequest(BaseModel):
    status: str = Field(..., min_length=1, max_length=40)
    actor_role: ActorRole
    metadata: dict[str, Any] = Field(default_factory=dict)


class OfferRequest(BaseModel):
    driver_id: str = Field(..., min_length=1, max_length=64)
    offer_price_minor: Optional[int] = Field(
        None, ge=0, description="Offered fare in minor units (cents)."
    )
    offer_price: Optional[Decimal] = Field(
        None,
        ge=0,
        description="Offered fare in major units; ignored when "
        "offer_price_minor is also given.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _requires_price(self) -> "OfferRequest":
        if self.offer_price_minor is None and self.offer_price is None:
            raise ValueError("offer_price_minor or offer_price is required")
        return self


class StageUpdateRequest(BaseModel):
    stage: RideStage
    actor_role: ActorRole = ActorRole.DRIVER
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Responses ─────────────────────────────────────────────────────────


class BookingResponse(BaseModel):
    id: str
    booking_code: str
    passenger_id: str
    driver_id: Optional[str] = None
    pickup_location: Optional[str] = None
    dropoff_location: Optional[str] = None
    pickup_time: Optional[datetime] = None
    ride_status: str
    status_driver: Optional[str] = None
    status_passenger: Optional[str] = None
    payment_confirmation_status: str
    ride_stage: Optional[str] = None
    estimated_price_minor: Optional[int] = None
    offer_price_minor: Optional[int] = None
    paid_amount_minor: Optional[int] = None
    currency: str = DEFAULT_CURRENCY
    payment_status: str
    paid_at: Optional[datetime] = None
    payment_provider: Optional[str] = None
    payment_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def estimated_price(self) -> Optional[Decimal]:
        return to_display(self.estimated_price_minor, self.currency)

    @computed_field
    @property
    def offer_price(self) -> Optional[Decimal]:
        return to_display(self.offer_price_minor, self.currency)

    @computed_field
    @property
    def paid_amount(self) -> Optional[Decimal]:
        return to_display(self.paid_amount_minor, self.currency)


class HistoryEntryResponse(BaseModel):
    id: int = Field(..., validation_alias="sequence")
    booking_id: str
    actor_role: str
    status_code: str
    label: str
    metadata: dict[str, Any] = {}
    created_at: datetime

    model_config = {"from_attributes": True, "populate_by_name": True}


class LatestStatusResponse(BaseModel):
    booking_id: str
    latest: dict[str, HistoryEntryResponse]


class StatusSummaryResponse(BaseModel):
    booking_id: str
    booking_code: str
    ride_status: str
    ride_status_label: str
    status_driver: Optional[str] = None
    status_passenger: Optional[str] = None
    payment_confirmation_status: str
    payment_status: str
    ride_stage: Optional[str] = None
    latest: dict[str, HistoryEntryResponse] = {}


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False
    outcome: str


class WebhookEventResponse(BaseModel):
    id: int
    provider: str
    provider_event_id: str
    event_type: str
    processed: bool
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
