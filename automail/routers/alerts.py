from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from automail.core.api_docs import error_responses
from automail.core.deps import get_db
from automail.models.alert import Alert
from automail.schemas.alert import AlertListOut, AlertMarkAllOut, AlertOut, AlertUnreadCountOut
from automail.services.alert_service import list_alerts, mark_alert_read, mark_all_read, unread_count

router = APIRouter(prefix="/alerts", tags=["alerts"])


def _alert_out(alert: Alert) -> AlertOut:
    return AlertOut(
        id=alert.id,
        type=alert.type,
        severity=alert.severity,
        title=alert.title,
        message=alert.message,
        metadata=alert.metadata_json if isinstance(alert.metadata_json, dict) else None,
        is_read=alert.is_read,
        read_at=alert.read_at,
        created_at=alert.created_at,
    )


@router.get(
    "",
    response_model=AlertListOut,
    summary="List operational alerts",
    responses=error_responses(422, 500),
)
def list_alerts_endpoint(
    unread_only: bool = Query(default=False, alias="unreadOnly"),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    rows = list_alerts(db, unread_only=unread_only, limit=limit)
    return AlertListOut(alerts=[_alert_out(row) for row in rows], unread_only=unread_only)


@router.get(
    "/unread-count",
    response_model=AlertUnreadCountOut,
    summary="Count unread alerts",
    responses=error_responses(500),
)
def unread_count_endpoint(db: Session = Depends(get_db)):
    return AlertUnreadCountOut(count=unread_count(db))


@router.post(
    "/read-all",
    response_model=AlertMarkAllOut,
    summary="Mark all alerts as read",
    responses=error_responses(500),
)
def mark_all_read_endpoint(db: Session = Depends(get_db)):
    updated = mark_all_read(db)
    db.commit()
    return AlertMarkAllOut(updated=updated)


@router.post(
    "/{alert_id}/read",
    response_model=AlertOut,
    summary="Mark one alert as read",
    responses=error_responses(404, 500),
)
def mark_read_endpoint(alert_id: str, db: Session = Depends(get_db)):
    alert = mark_alert_read(db, alert_id)
    db.commit()
    db.refresh(alert)
    return _alert_out(alert)
