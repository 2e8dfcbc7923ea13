import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from automail.core.enums import AutomationStatus, EnrollmentStatus, TriggerType
from automail.core.errors import InvalidStateError, NotFoundError, ValidationError
from automail.core.timeutils import utcnow
from automail.models.automation import Automation, AutomationStep
from automail.models.delivery import DeliveryRecord
from automail.models.enrollment import Enrollment

MAX_STEPS = 5
MAX_DELAY_MINUTES = 43_200
MAX_NAME_LENGTH = 200
MAX_SUBJECT_LENGTH = 200
MAX_HTML_BODY_LENGTH = 50_000


@dataclass(frozen=True)
class EnrollmentCounts:
    total: int
    active: int
    completed: int


@dataclass(frozen=True)
class AutomationStats:
    total_enrolled: int
    active: int
    completed: int
    stopped: int
    skipped: int
    total_sent: int
    total_failed: int


def _clean_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Automation name is required")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"Automation name must be at most {MAX_NAME_LENGTH} characters")
    return cleaned


def validate_steps(raw_steps: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    """Check a step list and return it normalized and ordered by index.

    Steps must be 1-5 long with contiguous zero-based indices. Static steps need
    both a subject and a body; generated steps may leave them empty, in which
    case a failed generation cannot fall back to static content.
    """
    steps = list(raw_steps or [])
    if not 1 <= len(steps) <= MAX_STEPS:
        raise ValidationError(f"Automations need between 1 and {MAX_STEPS} steps")

    ordered = sorted(steps, key=lambda item: int(item.get("step_index", -1)))
    indices = [int(item.get("step_index", -1)) for item in ordered]
    if indices != list(range(len(ordered))):
        raise ValidationError("Step indices must be contiguous and start at 0")

    normalized: list[dict[str, Any]] = []
    for item in ordered:
        index = int(item["step_index"])
        delay = int(item.get("delay_minutes", 0))
        if delay < 0 or delay > MAX_DELAY_MINUTES:
            raise ValidationError(f"Step {index}: delay must be between 0 and {MAX_DELAY_MINUTES} minutes")

        subject = str(item.get("subject") or "")
        html_body = str(item.get("html_body") or "")
        if len(subject) > MAX_SUBJECT_LENGTH:
            raise ValidationError(f"Step {index}: subject must be at most {MAX_SUBJECT_LENGTH} characters")
        if len(html_body) > MAX_HTML_BODY_LENGTH:
            raise ValidationError(f"Step {index}: body must be at most {MAX_HTML_BODY_LENGTH} characters")

        use_ai = bool(item.get("use_ai_generation", False))
        if not use_ai and (not subject.strip() or not html_body.strip()):
            raise ValidationError(f"Step {index}: subject and body are required unless content is generated")

        normalized.append(
            {
                "step_index": index,
                "delay_minutes": delay,
                "subject": subject,
                "html_body": html_body,
                "use_ai_generation": use_ai,
                "ai_purpose": _enum_value(item.get("ai_purpose")),
                "ai_topic": (str(item["ai_topic"]).strip() or None) if item.get("ai_topic") else None,
                "skip_condition": _enum_value(item.get("skip_condition")),
            }
        )
    return normalized


def _enum_value(value: Any) -> str | None:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def _build_steps(automation_id: str, steps: list[dict[str, Any]]) -> list[AutomationStep]:
    return [
        AutomationStep(id=str(uuid.uuid4()), automation_id=automation_id, **item)
        for item in steps
    ]


def get_automation(db: Session, automation_id: str) -> Automation:
    automation = db.execute(
        select(Automation).where(Automation.id == automation_id)
    ).scalar_one_or_none()
    if not automation:
        raise NotFoundError("Automation not found")
    return automation


def create_automation(
    db: Session,
    *,
    name: str,
    trigger_type: TriggerType | str,
    steps: list[dict[str, Any]],
    now: datetime | None = None,
) -> Automation:
    now = now or utcnow()
    automation = Automation(
        id=str(uuid.uuid4()),
        name=_clean_name(name),
        trigger_type=TriggerType(trigger_type).value,
        status=AutomationStatus.DRAFT.value,
        created_at=now,
        updated_at=now,
    )
    automation.steps = _build_steps(automation.id, validate_steps(steps))
    db.add(automation)
    db.flush()
    return automation


def update_automation(
    db: Session,
    automation_id: str,
    *,
    name: str | None = None,
    trigger_type: TriggerType | str | None = None,
    steps: list[dict[str, Any]] | None = None,
    now: datetime | None = None,
) -> Automation:
    automation = get_automation(db, automation_id)
    if automation.status == AutomationStatus.ACTIVE.value:
        raise InvalidStateError("Active automations cannot be edited; pause it first")

    if name is not None:
        automation.name = _clean_name(name)
    if trigger_type is not None:
        automation.trigger_type = TriggerType(trigger_type).value
    if steps is not None:
        validated = validate_steps(steps)
        automation.steps.clear()
        # Old rows must be gone before the unique (automation_id, step_index) inserts.
        db.flush()
        automation.steps.extend(_build_steps(automation.id, validated))
    automation.updated_at = now or utcnow()
    db.flush()
    return automation


def delete_automation(db: Session, automation_id: str) -> None:
    automation = get_automation(db, automation_id)
    active_count = int(
        db.execute(
            select(func.count(Enrollment.id)).where(
                Enrollment.automation_id == automation.id,
                Enrollment.status == EnrollmentStatus.ACTIVE.value,
            )
        ).scalar_one()
    )
    if active_count:
        raise InvalidStateError(
            f"Automation has {active_count} active enrollment(s); stop or let them finish before deleting"
        )

    db.execute(delete(DeliveryRecord).where(DeliveryRecord.automation_id == automation.id))
    db.execute(delete(Enrollment).where(Enrollment.automation_id == automation.id))
    db.delete(automation)
    db.flush()


def activate_automation(db: Session, automation_id: str, *, now: datetime | None = None) -> Automation:
    automation = get_automation(db, automation_id)
    if automation.status != AutomationStatus.ACTIVE.value:
        automation.status = AutomationStatus.ACTIVE.value
        automation.updated_at = now or utcnow()
        db.flush()
    return automation


def pause_automation(db: Session, automation_id: str, *, now: datetime | None = None) -> Automation:
    automation = get_automation(db, automation_id)
    if automation.status == AutomationStatus.DRAFT.value:
        raise InvalidStateError("Draft automations cannot be paused; activate it first")
    if automation.status == AutomationStatus.ACTIVE.value:
        automation.status = AutomationStatus.PAUSED.value
        automation.updated_at = now or utcnow()
        db.flush()
    return automation


def list_automations(
    db: Session,
    *,
    status: str | None = None,
    trigger_type: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Automation], int]:
    count_stmt = select(func.count(Automation.id))
    stmt = select(Automation)
    if status:
        count_stmt = count_stmt.where(Automation.status == status)
        stmt = stmt.where(Automation.status == status)
    if trigger_type:
        count_stmt = count_stmt.where(Automation.trigger_type == trigger_type)
        stmt = stmt.where(Automation.trigger_type == trigger_type)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(Automation.created_at.desc(), Automation.id.asc()).offset(offset).limit(limit)
    ).scalars().all()
    return list(rows), total


def enrollment_counts(db: Session, automation_ids: list[str]) -> dict[str, EnrollmentCounts]:
    if not automation_ids:
        return {}
    rows = db.execute(
        select(Enrollment.automation_id, Enrollment.status, func.count(Enrollment.id))
        .where(Enrollment.automation_id.in_(automation_ids))
        .group_by(Enrollment.automation_id, Enrollment.status)
    ).all()
    by_status: dict[str, dict[str, int]] = {automation_id: {} for automation_id in automation_ids}
    for automation_id, status, count in rows:
        by_status[automation_id][status] = int(count)
    return {
        automation_id: EnrollmentCounts(
            total=sum(counts.values()),
            active=counts.get(EnrollmentStatus.ACTIVE.value, 0),
            completed=counts.get(EnrollmentStatus.COMPLETED.value, 0),
        )
        for automation_id, counts in by_status.items()
    }


def delivery_counts(db: Session, automation_ids: list[str], *, status: str = "sent") -> dict[str, int]:
    if not automation_ids:
        return {}
    rows = db.execute(
        select(DeliveryRecord.automation_id, func.count(DeliveryRecord.id))
        .where(
            DeliveryRecord.automation_id.in_(automation_ids),
            DeliveryRecord.status == status,
        )
        .group_by(DeliveryRecord.automation_id)
    ).all()
    out = {automation_id: 0 for automation_id in automation_ids}
    for automation_id, count in rows:
        out[automation_id] = int(count)
    return out


def automation_stats(db: Session, automation_id: str) -> AutomationStats:
    automation = get_automation(db, automation_id)
    rows = db.execute(
        select(Enrollment.status, func.count(Enrollment.id))
        .where(Enrollment.automation_id == automation.id)
        .group_by(Enrollment.status)
    ).all()
    counts = {status: int(count) for status, count in rows}
    return AutomationStats(
        total_enrolled=sum(counts.values()),
        active=counts.get(EnrollmentStatus.ACTIVE.value, 0),
        completed=counts.get(EnrollmentStatus.COMPLETED.value, 0),
        stopped=counts.get(EnrollmentStatus.STOPPED.value, 0),
        skipped=counts.get(EnrollmentStatus.SKIPPED.value, 0),
        total_sent=delivery_counts(db, [automation.id], status="sent")[automation.id],
        total_failed=delivery_counts(db, [automation.id], status="failed")[automation.id],
    )
