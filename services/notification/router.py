"""
services/notification/router.py
Notification log: one row per (scope, recipient, channel, purpose).
Operators can list what a booking produced and resend a FAILED row.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.orchestration.orchestrator import Orchestrator, get_orchestrator
from shared.models.models import Notification, NotificationStatus
from shared.schemas.schemas import NotificationResponse

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=list[NotificationResponse])
async def list_notifications(
    booking_id: UUID = Query(...),
    status: NotificationStatus | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    query = (
        select(Notification)
        .where(Notification.booking_id == booking_id)
        .order_by(Notification.created_at, Notification.id)
    )
    if status:
        query = query.where(Notification.status == status)

    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [NotificationResponse.model_validate(n) for n in result.scalars()]


@router.post("/{notification_id}/resend", response_model=NotificationResponse)
async def resend_notification(
    notification_id: UUID,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Dispatch a FAILED notification again, on the same row. 409 for any other status."""
    notification = await orchestrator.resend_notification(notification_id)
    return NotificationResponse.model_validate(notification)
