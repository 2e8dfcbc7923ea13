from enum import Enum


class TriggerType(str, Enum):
    WELCOME = "welcome"
    POST_PURCHASE = "post_purchase"
    REACTIVATION = "reactivation"
    RE_ENGAGEMENT = "re_engagement"


class AutomationStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    STOPPED = "stopped"
    SKIPPED = "skipped"


class SkipCondition(str, Enum):
    PURCHASED_SINCE_TRIGGER = "purchased_since_trigger"
    BECAME_ACTIVE = "became_active"


class ContentMode(str, Enum):
    STATIC = "static"
    GENERATED = "generated"


class EmailPurpose(str, Enum):
    WELCOME = "welcome"
    PROMOTION = "promotion"
    REACTIVATION = "reactivation"
    NEWSLETTER = "newsletter"


class CustomerSegment(str, Enum):
    NEW = "new"
    ACTIVE = "active"
    LAPSED = "lapsed"


class TriggerEventType(str, Enum):
    CUSTOMER_REGISTERED = "customer_registered"
    FIRST_PURCHASE_COMPLETED = "first_purchase_completed"
    SEGMENT_CHANGED = "segment_changed"
    INACTIVE_30_DAYS = "inactive_30_days"


class StopReason(str, Enum):
    MANUAL = "manual"
    DELIVERY_FAILED = "delivery_failed"
    OPTED_OUT = "opted_out"
    CUSTOMER_MISSING = "customer_missing"


TERMINAL_ENROLLMENT_STATUSES = frozenset(
    {EnrollmentStatus.COMPLETED, EnrollmentStatus.STOPPED, EnrollmentStatus.SKIPPED}
)

TRIGGER_LABELS: dict[TriggerType, str] = {
    TriggerType.WELCOME: "Welcome",
    TriggerType.POST_PURCHASE: "Post-purchase follow-up",
    TriggerType.REACTIVATION: "Reactivation",
    TriggerType.RE_ENGAGEMENT: "Re-engagement",
}

# Audience segment passed to the content source for generated steps.
TRIGGER_AUDIENCE: dict[TriggerType, CustomerSegment] = {
    TriggerType.WELCOME: CustomerSegment.NEW,
    TriggerType.POST_PURCHASE: CustomerSegment.ACTIVE,
    TriggerType.REACTIVATION: CustomerSegment.LAPSED,
    TriggerType.RE_ENGAGEMENT: CustomerSegment.ACTIVE,
}
