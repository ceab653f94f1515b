"""Notification feed endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.dependencies import StudentId, get_db
from tutorxp.notifications.notification_service import get_notifications
from tutorxp.notifications.schemas import NotificationItem, NotificationListResponse

router = APIRouter(prefix="/api/v1", tags=["Notifications"])


@router.get("/students/{student_id}/notifications", response_model=NotificationListResponse)
async def list_notifications(
    student_id: StudentId,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Notifications emitted for a student, newest first."""
    items, total = await get_notifications(db, student_id, page=page, per_page=per_page)
    return NotificationListResponse(
        notifications=[
            NotificationItem(
                id=n.id,
                type=n.type,
                title=n.title,
                message=n.message,
                data=n.data or {},
                delivered=n.delivered,
                created_at=n.created_at,
            )
            for n in items
        ],
        total=total,
        page=page,
        per_page=per_page,
    )
