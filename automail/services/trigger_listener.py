import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from automail.core.config import settings
from automail.core.enums import (
    AutomationStatus,
    CustomerSegment,
    TriggerEventType,
    TriggerType,
)
from automail.core.errors import DuplicateEnrollmentError
from automail.core.observability import log_worker_event
from automail.core.timeutils import utcnow
from automail.models.automation import Automation
from automail.models.customer import Customer
from automail.models.enrollment import Enrollment
from automail.models.trigger_event import TriggerEvent
from automail.services.enrollment_service import enroll_customer

EVENT_PENDING = "pending"
EVENT_PROCESSED = "processed"
EVENT_FAILED = "failed"

# segment_changed is only mapped when the new segment is "lapsed".
EVENT_TRIGGERS: dict[TriggerEventType, TriggerType] = {
    TriggerEventType.CUSTOMER_REGISTERED: TriggerType.WELCOME,
    TriggerEventType.FIRST_PURCHASE_COMPLETED: TriggerType.POST_PURCHASE,
    TriggerEventType.SEGMENT_CHANGED: TriggerType.REACTIVATION,
    TriggerEventType.INACTIVE_30_DAYS: TriggerType.RE_ENGAGEMENT,
}

SWEEP_RECENT_WINDOW = timedelta(days=1)
SWEEP_INACTIVE_WINDOW = timedelta(days=30)


@dataclass(frozen=True)
class TriggerFeedSummary:
    processed_events: int
    enrollments_created: int
    failed_events: int


@dataclass(frozen=True)
class SweepSummary:
    automations_checked: int
    candidates: int
    enrollments_created: int


def resolve_trigger(event_type: TriggerEventType | str, payload: dict[str, Any] | None = None) -> TriggerType | None:
    try:
        member = TriggerEventType(event_type)
    except ValueError:
        return None
    if member == TriggerEventType.SEGMENT_CHANGED:
        segment = str((payload or {}).get("segment") or "").strip().lower()
        if segment != CustomerSegment.LAPSED.value:
            return None
    return EVENT_TRIGGERS[member]


def _is_opted_out(db: Session, customer_id: str) -> bool:
    opted_out_at = db.execute(
        select(Customer.marketing_opt_out_at).where(Customer.id == customer_id)
    ).scalar_one_or_none()
    return opted_out_at is not None


def _active_automations(db: Session, trigger_type: TriggerType | None = None) -> list[Automation]:
    stmt = select(Automation).where(Automation.status == AutomationStatus.ACTIVE.value)
    if trigger_type is not None:
        stmt = stmt.where(Automation.trigger_type == trigger_type.value)
    return list(db.execute(stmt.order_by(Automation.created_at.asc(), Automation.id.asc())).scalars().all())


def _enroll_into(db: Session, automations: list[Automation], customer_id: str, now: datetime) -> list[Enrollment]:
    automation_ids = [automation.id for automation in automations]
    created: list[Enrollment] = []
    for automation_id in automation_ids:
        # Reload after each commit/rollback so a lost race never leaves stale rows behind.
        automation = db.get(Automation, automation_id)
        if automation is None:
            continue
        try:
            created.append(enroll_customer(db, automation=automation, customer_id=customer_id, now=now))
        except DuplicateEnrollmentError:
            continue
    return created


def handle_trigger_event(
    db: Session,
    *,
    event_type: TriggerEventType | str,
    customer_id: str,
    payload: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> list[Enrollment]:
    """Enroll the customer into every active automation the event maps to.

    Existing enrollments for the same (automation, customer) pair are left
    untouched, so replaying an event is harmless.
    """
    now = now or utcnow()
    trigger_type = resolve_trigger(event_type, payload)
    if trigger_type is None:
        return []
    if _is_opted_out(db, customer_id):
        log_worker_event("enrollment_opted_out", customer_id=customer_id, trigger_type=trigger_type.value)
        return []

    automations = _active_automations(db, trigger_type)
    return _enroll_into(db, automations, customer_id, now)


def queue_trigger_event(
    db: Session,
    *,
    event_type: TriggerEventType | str,
    customer_id: str,
    payload: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> TriggerEvent:
    event = TriggerEvent(
        id=str(uuid.uuid4()),
        event_type=TriggerEventType(event_type).value,
        customer_id=customer_id,
        payload_json=payload or None,
        status=EVENT_PENDING,
        attempt_count=0,
        enrollments_created=0,
        created_at=now or utcnow(),
    )
    db.add(event)
    return event


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or "Trigger event processing failed"
    return text[:255]


def process_trigger_events(
    db: Session,
    *,
    limit: int = 100,
    max_attempts: int | None = None,
    now: datetime | None = None,
) -> TriggerFeedSummary:
    now = now or utcnow()
    max_attempts = max_attempts or settings.trigger_event_max_attempts
    event_ids = db.execute(
        select(TriggerEvent.id)
        .where(
            TriggerEvent.status.in_([EVENT_PENDING, EVENT_FAILED]),
            TriggerEvent.attempt_count < max_attempts,
        )
        .order_by(TriggerEvent.created_at.asc(), TriggerEvent.id.asc())
        .limit(limit)
    ).scalars().all()

    processed = 0
    enrollments_created = 0
    failed = 0
    for event_id in event_ids:
        event = db.get(TriggerEvent, event_id)
        if event is None:
            continue
        try:
            created = handle_trigger_event(
                db,
                event_type=event.event_type,
                customer_id=event.customer_id,
                payload=event.payload_json,
                now=now,
            )
        except Exception as exc:  # noqa: BLE001 - one bad event must not block the inbox
            db.rollback()
            event = db.get(TriggerEvent, event_id)
            event.attempt_count += 1
            event.status = EVENT_FAILED
            event.last_error = _short_error(exc)
            db.commit()
            failed += 1
            log_worker_event(
                "trigger_event_failed",
                level=logging.ERROR,
                event_id=event_id,
                attempt_count=event.attempt_count,
                error=event.last_error,
            )
            continue

        event = db.get(TriggerEvent, event_id)
        event.attempt_count += 1
        event.status = EVENT_PROCESSED
        event.enrollments_created = len(created)
        event.last_error = None
        event.processed_at = now
        db.commit()
        processed += 1
        enrollments_created += len(created)

    return TriggerFeedSummary(
        processed_events=processed,
        enrollments_created=enrollments_created,
        failed_events=failed,
    )


def _candidate_filter(trigger_type: TriggerType, now: datetime):
    if trigger_type == TriggerType.WELCOME:
        return Customer.registered_at >= now - SWEEP_RECENT_WINDOW
    if trigger_type == TriggerType.POST_PURCHASE:
        return Customer.first_purchase_at >= now - SWEEP_RECENT_WINDOW
    if trigger_type == TriggerType.REACTIVATION:
        return Customer.segment == CustomerSegment.LAPSED.value
    return and_(
        Customer.segment == CustomerSegment.ACTIVE.value,
        Customer.last_purchase_at.is_not(None),
        Customer.last_purchase_at <= now - SWEEP_INACTIVE_WINDOW,
    )


def sweep_trigger_candidates(db: Session, *, now: datetime | None = None, limit: int = 500) -> SweepSummary:
    """Enroll customers from the local mirror who match an active automation's trigger.

    Complements the event feed for events that were never delivered.
    """
    now = now or utcnow()
    automations = _active_automations(db)
    candidates = 0
    created = 0
    for automation in list(automations):
        automation_id = automation.id
        trigger_type = TriggerType(automation.trigger_type)
        already_enrolled = select(Enrollment.customer_id).where(Enrollment.automation_id == automation_id)
        customer_ids = db.execute(
            select(Customer.id)
            .where(
                _candidate_filter(trigger_type, now),
                Customer.marketing_opt_out_at.is_(None),
                Customer.id.not_in(already_enrolled),
            )
            .order_by(Customer.id.asc())
            .limit(limit)
        ).scalars().all()
        candidates += len(customer_ids)
        for customer_id in customer_ids:
            target = db.get(Automation, automation_id)
            if target is None:
                break
            try:
                enroll_customer(db, automation=target, customer_id=customer_id, now=now)
            except DuplicateEnrollmentError:
                continue
            created += 1

    summary = SweepSummary(
        automations_checked=len(automations),
        candidates=candidates,
        enrollments_created=created,
    )
    log_worker_event("trigger_sweep_completed", **asdict(summary))
    return summary
