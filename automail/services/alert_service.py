import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from automail.core.errors import NotFoundError
from automail.core.observability import log_worker_event
from automail.core.timeutils import utcnow
from automail.models.alert import Alert

ALERT_DELIVERY_FAILURE = "delivery_failure"
ALERT_DISPATCH_ERROR = "dispatch_error"


def raise_alert(
    db: Session,
    *,
    type: str,
    title: str,
    message: str,
    severity: str = "warning",
    metadata_json: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> Alert:
    alert = Alert(
        id=str(uuid.uuid4()),
        type=type,
        severity=severity,
        title=title[:160],
        message=message[:1000],
        metadata_json=metadata_json,
        is_read=False,
        created_at=now or utcnow(),
    )
    db.add(alert)
    log_worker_event("alert_raised", alert_type=type, severity=severity, title=alert.title)
    return alert


def list_alerts(db: Session, *, unread_only: bool = False, limit: int = 50) -> list[Alert]:
    stmt = select(Alert)
    if unread_only:
        stmt = stmt.where(Alert.is_read.is_(False))
    rows = db.execute(stmt.order_by(Alert.created_at.desc(), Alert.id.asc()).limit(limit)).scalars().all()
    return list(rows)


def unread_count(db: Session) -> int:
    return int(db.execute(select(func.count(Alert.id)).where(Alert.is_read.is_(False))).scalar_one())


def mark_alert_read(db: Session, alert_id: str, *, now: datetime | None = None) -> Alert:
    alert = db.execute(select(Alert).where(Alert.id == alert_id)).scalar_one_or_none()
    if not alert:
        raise NotFoundError("Alert not found")
    if not alert.is_read:
        alert.is_read = True
        alert.read_at = now or utcnow()
        db.flush()
    return alert


def mark_all_read(db: Session, *, now: datetime | None = None) -> int:
    result = db.execute(
        update(Alert)
        .where(Alert.is_read.is_(False))
        .values(is_read=True, read_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
