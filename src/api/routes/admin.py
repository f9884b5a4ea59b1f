"""
Admin / observability endpoints
===============================

GET /api/v1/admin/webhook-events -- payment ledger rows (``?processed=false``
                                    lists events needing manual reconciliation)
GET /api/v1/admin/health         -- simple health check
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db
from src.api.middleware import limiter
from src.api.schemas import HealthResponse, WebhookEventResponse
from src.config import settings
from src.infrastructure.repositories import WebhookEventRepository

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/webhook-events",
    response_model=list[WebhookEventResponse],
    summary="List payment webhook ledger entries",
)
@limiter.limit(settings.rate_limit)
async def list_webhook_events(
    request: Request,
    processed: Optional[bool] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    return await WebhookEventRepository(db).list_events(processed=processed, limit=limit)


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
