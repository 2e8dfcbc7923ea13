from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from automail.core.api_docs import error_responses
from automail.core.deps import get_db
from automail.models.trigger_event import TriggerEvent
from automail.schemas.event import TriggerEventIn, TriggerEventOut, TriggerFeedRunOut
from automail.services.trigger_listener import process_trigger_events, queue_trigger_event

router = APIRouter(prefix="/events", tags=["events"])


def _event_out(event: TriggerEvent) -> TriggerEventOut:
    return TriggerEventOut(
        id=event.id,
        event_type=event.event_type,
        customer_id=event.customer_id,
        payload=event.payload_json if isinstance(event.payload_json, dict) else None,
        status=event.status,
        attempt_count=event.attempt_count,
        enrollments_created=event.enrollments_created,
        last_error=event.last_error,
        created_at=event.created_at,
        processed_at=event.processed_at,
    )


@router.post(
    "",
    response_model=TriggerEventOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a trigger event",
    responses=error_responses(422, 500),
)
def queue_event(payload: TriggerEventIn, db: Session = Depends(get_db)):
    event = queue_trigger_event(
        db,
        event_type=payload.event_type,
        customer_id=payload.customer_id.strip(),
        payload=payload.payload,
    )
    db.commit()
    db.refresh(event)
    return _event_out(event)


@router.post(
    "/process",
    response_model=TriggerFeedRunOut,
    summary="Process queued trigger events now",
    responses=error_responses(422, 500),
)
def process_events(
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    summary = process_trigger_events(db, limit=limit)
    return TriggerFeedRunOut(
        processed_events=summary.processed_events,
        enrollments_created=summary.enrollments_created,
        failed_events=summary.failed_events,
    )
