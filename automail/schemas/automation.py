from datetime import datetime

from pydantic import ConfigDict, Field, model_validator

from automail.core.enums import (
    AutomationStatus,
    EmailPurpose,
    EnrollmentStatus,
    SkipCondition,
    TriggerType,
)
from automail.schemas.common import ApiModel, PaginationMeta


class AutomationStepIn(ApiModel):
    step_index: int
    delay_minutes: int
    subject: str = ""
    html_body: str = ""
    use_ai_generation: bool = False
    ai_purpose: EmailPurpose | None = None
    ai_topic: str | None = Field(default=None, max_length=200)
    skip_condition: SkipCondition | None = None


class AutomationCreateIn(ApiModel):
    name: str
    trigger_type: TriggerType
    steps: list[AutomationStepIn]

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Welcome series",
                "triggerType": "welcome",
                "steps": [
                    {
                        "stepIndex": 0,
                        "delayMinutes": 0,
                        "subject": "Welcome aboard",
                        "htmlBody": "<p>Thanks for signing up.</p>",
                        "useAiGeneration": False,
                        "skipCondition": None,
                    },
                    {
                        "stepIndex": 1,
                        "delayMinutes": 1440,
                        "subject": "Your first order",
                        "htmlBody": "<p>Here is 10% off.</p>",
                        "useAiGeneration": False,
                        "skipCondition": "purchased_since_trigger",
                    },
                ],
            }
        }
    )


class AutomationUpdateIn(ApiModel):
    name: str | None = None
    trigger_type: TriggerType | None = None
    steps: list[AutomationStepIn] | None = None

    @model_validator(mode="after")
    def validate_has_updates(self) -> "AutomationUpdateIn":
        if self.name is None and self.trigger_type is None and self.steps is None:
            raise ValueError("At least one field must be provided")
        return self


class AutomationStepOut(ApiModel):
    step_index: int
    delay_minutes: int
    subject: str
    html_body: str
    use_ai_generation: bool
    ai_purpose: EmailPurpose | None = None
    ai_topic: str | None = None
    skip_condition: SkipCondition | None = None


class EnrollmentCountsOut(ApiModel):
    total: int
    active: int
    completed: int


class AutomationStatsOut(ApiModel):
    total_enrolled: int
    active: int
    completed: int
    stopped: int
    skipped: int
    total_sent: int
    total_failed: int


class AutomationOut(ApiModel):
    id: str
    name: str
    trigger_type: TriggerType
    trigger_label: str
    status: AutomationStatus
    steps: list[AutomationStepOut]
    created_at: datetime
    updated_at: datetime


class AutomationSummaryOut(AutomationOut):
    enrollments: EnrollmentCountsOut
    total_sent: int


class AutomationDetailOut(AutomationOut):
    stats: AutomationStatsOut


class AutomationListOut(ApiModel):
    automations: list[AutomationSummaryOut]
    pagination: PaginationMeta
    status: AutomationStatus | None = None
    trigger_type: TriggerType | None = None


class AutomationDeleteOut(ApiModel):
    id: str
    deleted: bool


class EnrollmentOut(ApiModel):
    id: str
    automation_id: str
    customer_id: str
    customer_email: str | None = None
    customer_name: str | None = None
    current_step_index: int
    status: EnrollmentStatus
    next_send_at: datetime | None = None
    enrolled_at: datetime
    completed_at: datetime | None = None
    stop_reason: str | None = None


class EnrollmentListOut(ApiModel):
    enrollments: list[EnrollmentOut]
    pagination: PaginationMeta
    status: EnrollmentStatus | None = None


class QueueRunOut(ApiModel):
    processed: int
    sent: int
    completed: int
    skipped: int
    retried: int
    stopped: int
    contended: int
    superseded: int
    errors: int
