import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from automail.core.enums import (
    TERMINAL_ENROLLMENT_STATUSES,
    AutomationStatus,
    EnrollmentStatus,
    StopReason,
)
from automail.core.errors import ClaimContentionError, DuplicateEnrollmentError, NotFoundError
from automail.core.observability import log_worker_event
from automail.core.timeutils import add_minutes, as_utc, utcnow
from automail.models.automation import Automation
from automail.models.customer import Customer
from automail.models.enrollment import Enrollment
from automail.services.automation_service import get_automation


@dataclass(frozen=True)
class StepSnapshot:
    step_index: int
    delay_minutes: int
    subject: str
    html_body: str
    use_ai_generation: bool
    ai_purpose: str | None
    ai_topic: str | None
    skip_condition: str | None


@dataclass(frozen=True)
class ClaimedEnrollment:
    """Detached view of an enrollment taken at claim time.

    `version` is the value written by the claim; every follow-up write is
    conditioned on it.
    """

    id: str
    automation_id: str
    customer_id: str
    current_step_index: int
    enrolled_at: datetime
    version: int
    attempt_count: int
    worker_id: str
    trigger_type: str
    steps: tuple[StepSnapshot, ...]

    @property
    def current_step(self) -> StepSnapshot | None:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    @property
    def is_last_step(self) -> bool:
        return self.current_step_index >= len(self.steps) - 1


@dataclass(frozen=True)
class DueEnrollment:
    id: str
    version: int


def enroll_customer(
    db: Session,
    *,
    automation: Automation,
    customer_id: str,
    now: datetime | None = None,
) -> Enrollment:
    """Create the enrollment for (automation, customer) and commit it.

    Raises DuplicateEnrollmentError when the pair already has an enrollment in
    any status. On a unique-constraint race the session is rolled back.
    """
    now = now or utcnow()
    existing = db.execute(
        select(Enrollment.id).where(
            Enrollment.automation_id == automation.id,
            Enrollment.customer_id == customer_id,
        )
    ).scalar_one_or_none()
    if existing:
        raise DuplicateEnrollmentError(f"Customer {customer_id} is already enrolled in automation {automation.id}")

    first_delay = automation.steps[0].delay_minutes if automation.steps else 0
    enrollment = Enrollment(
        id=str(uuid.uuid4()),
        automation_id=automation.id,
        customer_id=customer_id,
        current_step_index=0,
        status=EnrollmentStatus.ACTIVE.value,
        next_send_at=add_minutes(now, first_delay),
        enrolled_at=now,
        version=1,
        attempt_count=0,
        updated_at=now,
    )
    db.add(enrollment)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateEnrollmentError(
            f"Customer {customer_id} is already enrolled in automation {automation.id}"
        ) from None

    log_worker_event(
        "enrollment_created",
        enrollment_id=enrollment.id,
        automation_id=automation.id,
        customer_id=customer_id,
        next_send_at=enrollment.next_send_at,
    )
    return enrollment


def find_due_enrollments(db: Session, *, now: datetime, limit: int) -> list[DueEnrollment]:
    rows = db.execute(
        select(Enrollment.id, Enrollment.version)
        .join(Automation, Automation.id == Enrollment.automation_id)
        .where(
            Enrollment.status == EnrollmentStatus.ACTIVE.value,
            Enrollment.next_send_at <= now,
            Automation.status == AutomationStatus.ACTIVE.value,
            or_(Enrollment.claim_expires_at.is_(None), Enrollment.claim_expires_at <= now),
        )
        .order_by(Enrollment.next_send_at.asc(), Enrollment.id.asc())
        .limit(limit)
    ).all()
    return [DueEnrollment(id=row[0], version=int(row[1])) for row in rows]


def claim_enrollment(
    db: Session,
    enrollment_id: str,
    *,
    version: int,
    worker_id: str,
    now: datetime,
    lease_seconds: int,
) -> ClaimedEnrollment:
    active_automations = select(Automation.id).where(Automation.status == AutomationStatus.ACTIVE.value)
    result = db.execute(
        update(Enrollment)
        .where(
            Enrollment.id == enrollment_id,
            Enrollment.version == version,
            Enrollment.status == EnrollmentStatus.ACTIVE.value,
            Enrollment.automation_id.in_(active_automations),
            or_(Enrollment.claim_expires_at.is_(None), Enrollment.claim_expires_at <= now),
        )
        .values(
            claimed_by=worker_id,
            claim_expires_at=now + timedelta(seconds=lease_seconds),
            version=Enrollment.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ClaimContentionError(f"Enrollment {enrollment_id} is claimed, changed or no longer due")
    db.commit()

    enrollment = db.execute(select(Enrollment).where(Enrollment.id == enrollment_id)).scalar_one()
    automation = get_automation(db, enrollment.automation_id)
    return ClaimedEnrollment(
        id=enrollment.id,
        automation_id=enrollment.automation_id,
        customer_id=enrollment.customer_id,
        current_step_index=enrollment.current_step_index,
        enrolled_at=as_utc(enrollment.enrolled_at),
        version=enrollment.version,
        attempt_count=enrollment.attempt_count,
        worker_id=worker_id,
        trigger_type=automation.trigger_type,
        steps=tuple(
            StepSnapshot(
                step_index=step.step_index,
                delay_minutes=step.delay_minutes,
                subject=step.subject,
                html_body=step.html_body,
                use_ai_generation=step.use_ai_generation,
                ai_purpose=step.ai_purpose,
                ai_topic=step.ai_topic,
                skip_condition=step.skip_condition,
            )
            for step in automation.steps
        ),
    )


def _write_claimed(db: Session, claim: ClaimedEnrollment, *, now: datetime, **values: Any) -> bool:
    """Apply a state write only if nothing else touched the row since the claim."""
    result = db.execute(
        update(Enrollment)
        .where(
            Enrollment.id == claim.id,
            Enrollment.version == claim.version,
            Enrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .values(
            version=Enrollment.version + 1,
            claimed_by=None,
            claim_expires_at=None,
            updated_at=now,
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def advance_enrollment(db: Session, claim: ClaimedEnrollment, *, now: datetime) -> bool:
    next_index = claim.current_step_index + 1
    next_step = claim.steps[next_index]
    return _write_claimed(
        db,
        claim,
        now=now,
        current_step_index=next_index,
        next_send_at=add_minutes(now, next_step.delay_minutes),
        attempt_count=0,
        last_error=None,
    )


def complete_enrollment(db: Session, claim: ClaimedEnrollment, *, now: datetime) -> bool:
    return _write_claimed(
        db,
        claim,
        now=now,
        status=EnrollmentStatus.COMPLETED.value,
        next_send_at=None,
        completed_at=now,
        attempt_count=0,
        last_error=None,
    )


def skip_enrollment(db: Session, claim: ClaimedEnrollment, *, now: datetime) -> bool:
    return _write_claimed(
        db,
        claim,
        now=now,
        status=EnrollmentStatus.SKIPPED.value,
        next_send_at=None,
    )


def stop_claimed_enrollment(
    db: Session,
    claim: ClaimedEnrollment,
    *,
    reason: StopReason,
    now: datetime,
    error: str | None = None,
    attempt_count: int | None = None,
) -> bool:
    values: dict[str, Any] = {
        "status": EnrollmentStatus.STOPPED.value,
        "next_send_at": None,
        "stop_reason": reason.value,
    }
    if error is not None:
        values["last_error"] = error[:255]
    if attempt_count is not None:
        values["attempt_count"] = attempt_count
    return _write_claimed(db, claim, now=now, **values)


def reschedule_enrollment(
    db: Session,
    claim: ClaimedEnrollment,
    *,
    attempt_count: int,
    next_send_at: datetime,
    error: str,
    now: datetime,
) -> bool:
    return _write_claimed(
        db,
        claim,
        now=now,
        attempt_count=attempt_count,
        next_send_at=next_send_at,
        last_error=error[:255],
    )


def get_enrollment(db: Session, automation_id: str, enrollment_id: str) -> Enrollment:
    enrollment = db.execute(
        select(Enrollment).where(
            Enrollment.id == enrollment_id,
            Enrollment.automation_id == automation_id,
        )
    ).scalar_one_or_none()
    if not enrollment:
        raise NotFoundError("Enrollment not found")
    return enrollment


def stop_enrollment(
    db: Session,
    automation_id: str,
    enrollment_id: str,
    *,
    now: datetime | None = None,
) -> Enrollment:
    enrollment = get_enrollment(db, automation_id, enrollment_id)
    if enrollment.status in {status.value for status in TERMINAL_ENROLLMENT_STATUSES}:
        return enrollment

    # Conditioned on status only: a claimed row still stops, a finished one is left alone.
    # Bumping the version makes any in-flight dispatcher write for this row a no-op.
    result = db.execute(
        update(Enrollment)
        .where(
            Enrollment.id == enrollment.id,
            Enrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .values(
            status=EnrollmentStatus.STOPPED.value,
            stop_reason=StopReason.MANUAL.value,
            next_send_at=None,
            claimed_by=None,
            claim_expires_at=None,
            version=Enrollment.version + 1,
            updated_at=now or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.refresh(enrollment)
    if result.rowcount == 1:
        log_worker_event("enrollment_stopped", enrollment_id=enrollment.id, reason=StopReason.MANUAL.value)
    return enrollment


def get_customer_contact(db: Session, customer_id: str) -> tuple[str | None, str | None]:
    row = db.execute(select(Customer.email, Customer.name).where(Customer.id == customer_id)).first()
    if row is None:
        return None, None
    return row.email, row.name


def list_enrollments(
    db: Session,
    automation_id: str,
    *,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[tuple[Enrollment, str | None, str | None]], int]:
    automation = get_automation(db, automation_id)
    count_stmt = select(func.count(Enrollment.id)).where(Enrollment.automation_id == automation.id)
    stmt = (
        select(Enrollment, Customer.email, Customer.name)
        .outerjoin(Customer, Customer.id == Enrollment.customer_id)
        .where(Enrollment.automation_id == automation.id)
    )
    if status:
        count_stmt = count_stmt.where(Enrollment.status == status)
        stmt = stmt.where(Enrollment.status == status)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(Enrollment.enrolled_at.desc(), Enrollment.id.asc()).offset(offset).limit(limit)
    ).all()
    return [(row[0], row[1], row[2]) for row in rows], total
