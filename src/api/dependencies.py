"""FastAPI dependency injection helpers."""

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.infrastructure.database import async_session_factory
from src.services.history import StatusHistoryRecorder
from src.services.payments import PaymentWebhookReconciler
from src.services.status_sync import StatusSynchronizer


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# Services are built once in the app lifespan and hung off ``app.state``.


def get_synchronizer(request: Request) -> StatusSynchronizer:
    return request.app.state.synchronizer


def get_recorder(request: Request) -> StatusHistoryRecorder:
    return request.app.state.recorder


def get_reconciler(request: Request) -> PaymentWebhookReconciler:
    return request.app.state.reconciler
