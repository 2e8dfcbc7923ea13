from datetime import datetime
from typing import Any

from pydantic import ConfigDict, Field

from automail.core.enums import TriggerEventType
from automail.schemas.common import ApiModel


class TriggerEventIn(ApiModel):
    event_type: TriggerEventType
    customer_id: str = Field(min_length=1, max_length=36)
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "eventType": "segment_changed",
                "customerId": "cus-123",
                "payload": {"segment": "lapsed"},
            }
        }
    )


class TriggerEventOut(ApiModel):
    id: str
    event_type: TriggerEventType
    customer_id: str
    payload: dict[str, Any] | None = None
    status: str
    attempt_count: int
    enrollments_created: int
    last_error: str | None = None
    created_at: datetime
    processed_at: datetime | None = None


class TriggerFeedRunOut(ApiModel):
    processed_events: int
    enrollments_created: int
    failed_events: int
