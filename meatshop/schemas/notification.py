from datetime import datetime
from typing import Any

from meatshop.schemas.common import CamelModel


class NotificationOut(CamelModel):
    id: str
    user_id: str | None = None
    order_id: str | None = None
    type: str
    channel: str
    recipient: str | None = None
    title: str
    message: str
    status: str
    failure_reason: str | None = None
    metadata: dict[str, Any] | None = None
    sent_at: datetime | None = None
    created_at: datetime


class NotificationStatsOut(CamelModel):
    total: int
    sent: int
    failed: int
    by_type: dict[str, int]
    by_channel: dict[str, int]
