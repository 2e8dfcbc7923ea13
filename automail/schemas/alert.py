from datetime import datetime
from typing import Any

from automail.schemas.common import ApiModel


class AlertOut(ApiModel):
    id: str
    type: str
    severity: str
    title: str
    message: str
    metadata: dict[str, Any] | None = None
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime


class AlertListOut(ApiModel):
    alerts: list[AlertOut]
    unread_only: bool


class AlertUnreadCountOut(ApiModel):
    count: int


class AlertMarkAllOut(ApiModel):
    updated: int
