from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from meatshop.core.api_docs import error_responses
from meatshop.core.deps import get_db
from meatshop.schemas.common import ApiResponse
from meatshop.schemas.notification import NotificationOut, NotificationStatsOut
from meatshop.services.notification_service import list_notifications, notification_stats

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get(
    "",
    response_model=ApiResponse[list[NotificationOut]],
    summary="Notification history, newest first",
    responses=error_responses(500),
)
def list_notifications_endpoint(
    user_id: str | None = Query(default=None, alias="userId"),
    order_id: str | None = Query(default=None, alias="orderId"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    rows = list_notifications(db, user_id=user_id, order_id=order_id, limit=limit)
    return ApiResponse[list[NotificationOut]](
        data=[
            NotificationOut(
                id=row.id,
                user_id=row.user_id,
                order_id=row.order_id,
                type=row.type,
                channel=row.channel,
                recipient=row.recipient,
                title=row.title,
                message=row.message,
                status=row.status,
                failure_reason=row.failure_reason,
                metadata=row.metadata_json,
                sent_at=row.sent_at,
                created_at=row.created_at,
            )
            for row in rows
        ]
    )


@router.get(
    "/stats",
    response_model=ApiResponse[NotificationStatsOut],
    summary="Notification delivery statistics",
    responses=error_responses(500),
)
def notification_stats_endpoint(db: Session = Depends(get_db)):
    return ApiResponse[NotificationStatsOut](data=NotificationStatsOut(**notification_stats(db)))
