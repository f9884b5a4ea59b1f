"""Initial schema: bookings, status history and the webhook event ledger.

Revision ID: 001
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── bookings ──────────────────────────────────────────────────────
    op.create_table(
        "bookings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("booking_code", sa.String(20), unique=True, nullable=False),
        sa.Column("passenger_id", sa.String(64), nullable=False),
        sa.Column("driver_id", sa.String(64), nullable=True),
        sa.Column("pickup_location", sa.String(255), nullable=True),
        sa.Column("dropoff_location", sa.String(255), nullable=True),
        sa.Column("pickup_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "ride_status",
            sa.String(40),
            nullable=False,
            server_default="pending_driver",
        ),
        sa.Column("status_driver", sa.String(40), nullable=True),
        sa.Column("status_passenger", sa.String(40), nullable=True),
        sa.Column(
            "payment_confirmation_status",
            sa.String(40),
            nullable=False,
            server_default="waiting_for_offer",
        ),
        sa.Column("ride_stage", sa.String(40), nullable=True),
        sa.Column("estimated_price_minor", sa.Integer, nullable=True),
        sa.Column("offer_price_minor", sa.Integer, nullable=True),
        sa.Column("paid_amount_minor", sa.Integer, nullable=True),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column(
            "payment_status", sa.String(20), nullable=False, server_default="unpaid"
        ),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_provider", sa.String(40), nullable=True),
        sa.Column("payment_reference", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_bookings_ride_status", "bookings", ["ride_status", "updated_at"]
    )
    op.create_index("idx_bookings_passenger", "bookings", ["passenger_id"])
    op.create_index("idx_bookings_driver", "bookings", ["driver_id"])
    op.create_index(
        "idx_bookings_payment_reference", "bookings", ["payment_reference"]
    )

    # ── booking_status_history (append-only) ──────────────────────────
    op.create_table(
        "booking_status_history",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id",
            sa.String(36),
            sa.ForeignKey("bookings.id"),
            nullable=False,
        ),
        sa.Column("actor_role", sa.String(20), nullable=False),
        sa.Column("status_code", sa.String(40), nullable=False),
        sa.Column("label", sa.String(120), nullable=False),
        sa.Column("metadata", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_status_history_booking",
        "booking_status_history",
        ["booking_id", "created_at"],
    )

    # ── webhook_events (idempotency ledger) ───────────────────────────
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(40), nullable=False),
        sa.Column("provider_event_id", sa.String(255), unique=True, nullable=False),
        sa.Column("event_type", sa.String(120), nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column(
            "processed", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_webhook_events_processed", "webhook_events", ["processed"])


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_table("booking_status_history")
    op.drop_table("bookings")
