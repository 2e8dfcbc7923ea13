from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from automail.core.api_docs import error_responses
from automail.core.deps import get_db, get_dispatcher
from automail.core.enums import TRIGGER_LABELS, AutomationStatus, EnrollmentStatus, TriggerType
from automail.models.automation import Automation, AutomationStep
from automail.models.enrollment import Enrollment
from automail.schemas.automation import (
    AutomationCreateIn,
    AutomationDeleteOut,
    AutomationDetailOut,
    AutomationListOut,
    AutomationOut,
    AutomationStatsOut,
    AutomationStepOut,
    AutomationSummaryOut,
    AutomationUpdateIn,
    EnrollmentCountsOut,
    EnrollmentListOut,
    EnrollmentOut,
    QueueRunOut,
)
from automail.schemas.common import PaginationMeta
from automail.services.automation_service import (
    activate_automation,
    automation_stats,
    create_automation,
    delete_automation,
    delivery_counts,
    enrollment_counts,
    get_automation,
    list_automations,
    pause_automation,
    update_automation,
)
from automail.services.dispatcher import Dispatcher
from automail.services.enrollment_service import get_customer_contact, list_enrollments, stop_enrollment

router = APIRouter(prefix="/automations", tags=["automations"])


def _step_out(step: AutomationStep) -> AutomationStepOut:
    return AutomationStepOut(
        step_index=step.step_index,
        delay_minutes=step.delay_minutes,
        subject=step.subject,
        html_body=step.html_body,
        use_ai_generation=step.use_ai_generation,
        ai_purpose=step.ai_purpose,
        ai_topic=step.ai_topic,
        skip_condition=step.skip_condition,
    )


def _automation_fields(automation: Automation) -> dict:
    return {
        "id": automation.id,
        "name": automation.name,
        "trigger_type": automation.trigger_type,
        "trigger_label": TRIGGER_LABELS[TriggerType(automation.trigger_type)],
        "status": automation.status,
        "steps": [_step_out(step) for step in automation.steps],
        "created_at": automation.created_at,
        "updated_at": automation.updated_at,
    }


def _automation_out(automation: Automation) -> AutomationOut:
    return AutomationOut(**_automation_fields(automation))


def _automation_detail_out(db: Session, automation: Automation) -> AutomationDetailOut:
    stats = automation_stats(db, automation.id)
    return AutomationDetailOut(
        **_automation_fields(automation),
        stats=AutomationStatsOut(
            total_enrolled=stats.total_enrolled,
            active=stats.active,
            completed=stats.completed,
            stopped=stats.stopped,
            skipped=stats.skipped,
            total_sent=stats.total_sent,
            total_failed=stats.total_failed,
        ),
    )


def _enrollment_out(
    enrollment: Enrollment,
    *,
    customer_email: str | None = None,
    customer_name: str | None = None,
) -> EnrollmentOut:
    return EnrollmentOut(
        id=enrollment.id,
        automation_id=enrollment.automation_id,
        customer_id=enrollment.customer_id,
        customer_email=customer_email,
        customer_name=customer_name,
        current_step_index=enrollment.current_step_index,
        status=enrollment.status,
        next_send_at=enrollment.next_send_at,
        enrolled_at=enrollment.enrolled_at,
        completed_at=enrollment.completed_at,
        stop_reason=enrollment.stop_reason,
    )


def _steps_payload(steps) -> list[dict]:
    return [item.model_dump() for item in steps]


@router.get(
    "",
    response_model=AutomationListOut,
    summary="List automations",
    responses=error_responses(422, 500),
)
def list_automations_endpoint(
    status_filter: AutomationStatus | None = Query(default=None, alias="status"),
    trigger_type: TriggerType | None = Query(default=None, alias="triggerType"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    rows, total = list_automations(
        db,
        status=status_filter.value if status_filter else None,
        trigger_type=trigger_type.value if trigger_type else None,
        limit=limit,
        offset=offset,
    )
    ids = [row.id for row in rows]
    counts = enrollment_counts(db, ids)
    sent = delivery_counts(db, ids, status="sent")
    items = [
        AutomationSummaryOut(
            **_automation_fields(row),
            enrollments=EnrollmentCountsOut(
                total=counts[row.id].total,
                active=counts[row.id].active,
                completed=counts[row.id].completed,
            ),
            total_sent=sent[row.id],
        )
        for row in rows
    ]
    count = len(items)
    return AutomationListOut(
        automations=items,
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
        status=status_filter,
        trigger_type=trigger_type,
    )


@router.post(
    "",
    response_model=AutomationOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create automation (starts as draft)",
    responses=error_responses(422, 500),
)
def create_automation_endpoint(payload: AutomationCreateIn, db: Session = Depends(get_db)):
    automation = create_automation(
        db,
        name=payload.name,
        trigger_type=payload.trigger_type,
        steps=_steps_payload(payload.steps),
    )
    db.commit()
    db.refresh(automation)
    return _automation_out(automation)


@router.post(
    "/queue/run",
    response_model=QueueRunOut,
    summary="Run one dispatch tick now",
    responses=error_responses(500),
)
def run_queue(dispatcher: Dispatcher = Depends(get_dispatcher)):
    summary = dispatcher.run_tick()
    return QueueRunOut(**summary.to_dict())


@router.get(
    "/{automation_id}",
    response_model=AutomationDetailOut,
    summary="Get automation with stats",
    responses=error_responses(404, 500),
)
def get_automation_endpoint(automation_id: str, db: Session = Depends(get_db)):
    automation = get_automation(db, automation_id)
    return _automation_detail_out(db, automation)


@router.put(
    "/{automation_id}",
    response_model=AutomationOut,
    summary="Update automation (not allowed while active)",
    responses=error_responses(404, 409, 422, 500),
)
def update_automation_endpoint(
    automation_id: str,
    payload: AutomationUpdateIn,
    db: Session = Depends(get_db),
):
    automation = update_automation(
        db,
        automation_id,
        name=payload.name,
        trigger_type=payload.trigger_type,
        steps=_steps_payload(payload.steps) if payload.steps is not None else None,
    )
    db.commit()
    db.refresh(automation)
    return _automation_out(automation)


@router.delete(
    "/{automation_id}",
    response_model=AutomationDeleteOut,
    summary="Delete automation (not allowed with active enrollments)",
    responses=error_responses(404, 409, 500),
)
def delete_automation_endpoint(automation_id: str, db: Session = Depends(get_db)):
    delete_automation(db, automation_id)
    db.commit()
    return AutomationDeleteOut(id=automation_id, deleted=True)


@router.post(
    "/{automation_id}/activate",
    response_model=AutomationOut,
    summary="Activate automation",
    responses=error_responses(404, 500),
)
def activate_automation_endpoint(automation_id: str, db: Session = Depends(get_db)):
    automation = activate_automation(db, automation_id)
    db.commit()
    db.refresh(automation)
    return _automation_out(automation)


@router.post(
    "/{automation_id}/pause",
    response_model=AutomationOut,
    summary="Pause automation",
    responses=error_responses(404, 409, 500),
)
def pause_automation_endpoint(automation_id: str, db: Session = Depends(get_db)):
    automation = pause_automation(db, automation_id)
    db.commit()
    db.refresh(automation)
    return _automation_out(automation)


@router.get(
    "/{automation_id}/enrollments",
    response_model=EnrollmentListOut,
    summary="List enrollments of an automation",
    responses=error_responses(404, 422, 500),
)
def list_enrollments_endpoint(
    automation_id: str,
    status_filter: EnrollmentStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    rows, total = list_enrollments(
        db,
        automation_id,
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )
    items = [
        _enrollment_out(enrollment, customer_email=email, customer_name=name)
        for enrollment, email, name in rows
    ]
    count = len(items)
    return EnrollmentListOut(
        enrollments=items,
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
        status=status_filter,
    )


@router.post(
    "/{automation_id}/enrollments/{enrollment_id}/stop",
    response_model=EnrollmentOut,
    summary="Stop an enrollment",
    responses=error_responses(404, 500),
)
def stop_enrollment_endpoint(automation_id: str, enrollment_id: str, db: Session = Depends(get_db)):
    enrollment = stop_enrollment(db, automation_id, enrollment_id)
    db.commit()
    db.refresh(enrollment)
    email, name = get_customer_contact(db, enrollment.customer_id)
    return _enrollment_out(enrollment, customer_email=email, customer_name=name)
