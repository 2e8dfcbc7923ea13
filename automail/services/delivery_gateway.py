import smtplib
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from automail.core.config import settings
from automail.core.errors import DeliveryError
from automail.models.delivery import DeliveryRecord

DELIVERY_SENT = "sent"
DELIVERY_FAILED = "failed"
DELIVERY_PENDING = "pending"
DELIVERY_DUPLICATE = "duplicate"


@dataclass(frozen=True)
class DeliveryRequest:
    idempotency_key: str
    recipient_email: str
    recipient_name: str
    subject: str
    html_body: str


@dataclass(frozen=True)
class DeliveryResult:
    provider: str
    message_id: Optional[str]
    status: str


class DeliveryGateway(Protocol):
    """Sends one rendered step.

    Implementations must honour ``request.idempotency_key``: a key that was
    already accepted is answered with a ``duplicate`` result instead of a
    second message.
    """

    name: str

    def send(self, request: DeliveryRequest) -> DeliveryResult:
        ...


class SentKeyRegistry:
    """Idempotency keys a gateway has accepted.

    A key is reserved before the provider call and released only when the
    call fails, so a send that outlives its caller's timeout still holds it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._keys: set[str] = set()

    def reserve(self, key: str) -> bool:
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._keys.discard(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._keys


_sent_keys = SentKeyRegistry()


def _duplicate_result(provider: str) -> DeliveryResult:
    return DeliveryResult(provider=provider, message_id=None, status=DELIVERY_DUPLICATE)


class StubDeliveryGateway:
    name = "stub"

    def __init__(self, *, registry: SentKeyRegistry | None = None):
        self._sent_keys = registry or _sent_keys

    def send(self, request: DeliveryRequest) -> DeliveryResult:
        if not self._sent_keys.reserve(request.idempotency_key):
            return _duplicate_result(self.name)
        return DeliveryResult(
            provider=self.name,
            message_id=f"msg-{uuid.uuid4().hex[:14]}",
            status=DELIVERY_SENT,
        )


class SmtpDeliveryGateway:
    name = "smtp"

    def __init__(self, *, timeout_seconds: float = 20, registry: SentKeyRegistry | None = None):
        if not (settings.smtp_host and settings.smtp_sender_email):
            raise ValueError("SMTP_HOST and SMTP_SENDER_EMAIL are required for the smtp delivery provider")
        self._timeout_seconds = timeout_seconds
        self._sent_keys = registry or _sent_keys

    def _build_message(self, request: DeliveryRequest) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = request.subject
        if settings.smtp_sender_name:
            message["From"] = formataddr((settings.smtp_sender_name, settings.smtp_sender_email))
        else:
            message["From"] = settings.smtp_sender_email
        message["To"] = formataddr((request.recipient_name, request.recipient_email))
        if settings.smtp_reply_to_email:
            message["Reply-To"] = settings.smtp_reply_to_email
        # Lets receiving systems and support staff trace duplicates back to one step.
        message["X-Automail-Idempotency-Key"] = request.idempotency_key
        message.set_content("This message requires an HTML-capable mail client.")
        message.add_alternative(request.html_body, subtype="html")
        return message

    def send(self, request: DeliveryRequest) -> DeliveryResult:
        message = self._build_message(request)
        if not self._sent_keys.reserve(request.idempotency_key):
            return _duplicate_result(self.name)
        try:
            if settings.smtp_use_ssl:
                with smtplib.SMTP_SSL(
                    settings.smtp_host,
                    settings.smtp_port,
                    timeout=self._timeout_seconds,
                ) as server:
                    if settings.smtp_username:
                        server.login(settings.smtp_username, settings.smtp_password or "")
                    server.send_message(message)
            else:
                with smtplib.SMTP(
                    settings.smtp_host,
                    settings.smtp_port,
                    timeout=self._timeout_seconds,
                ) as server:
                    if settings.smtp_use_starttls:
                        server.starttls()
                    if settings.smtp_username:
                        server.login(settings.smtp_username, settings.smtp_password or "")
                    server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            self._sent_keys.release(request.idempotency_key)
            raise DeliveryError(f"SMTP delivery failed: {exc}") from exc

        return DeliveryResult(
            provider=self.name,
            message_id=f"smtp-{uuid.uuid4().hex[:14]}",
            status=DELIVERY_SENT,
        )


def get_delivery_gateway(name: str | None = None) -> DeliveryGateway:
    normalized = (name or settings.delivery_provider or "stub").strip().lower()
    if normalized == "stub":
        return StubDeliveryGateway()
    if normalized == "smtp":
        return SmtpDeliveryGateway(timeout_seconds=settings.external_call_timeout_seconds)
    raise ValueError(f"Unknown delivery provider '{name}'. Available: smtp, stub")


def idempotency_key(enrollment_id: str, step_index: int) -> str:
    return f"{enrollment_id}:{step_index}"


def get_delivery_record(db: Session, key: str) -> DeliveryRecord | None:
    return db.execute(
        select(DeliveryRecord).where(DeliveryRecord.idempotency_key == key)
    ).scalar_one_or_none()


def _record_for(
    db: Session,
    *,
    key: str,
    automation_id: str,
    enrollment_id: str,
    step_index: int,
    recipient_email: str,
    provider: str,
) -> DeliveryRecord:
    record = get_delivery_record(db, key)
    if record:
        return record
    record = DeliveryRecord(
        id=str(uuid.uuid4()),
        idempotency_key=key,
        automation_id=automation_id,
        enrollment_id=enrollment_id,
        step_index=step_index,
        recipient_email=recipient_email,
        subject="",
        provider=provider,
        status=DELIVERY_FAILED,
        attempt_count=0,
    )
    db.add(record)
    return record


def record_delivery_pending(
    db: Session,
    *,
    automation_id: str,
    enrollment_id: str,
    step_index: int,
    request: DeliveryRequest,
    provider: str,
    now: datetime,
) -> DeliveryRecord:
    """Mark the step as handed to the gateway before the call is made."""
    record = _record_for(
        db,
        key=request.idempotency_key,
        automation_id=automation_id,
        enrollment_id=enrollment_id,
        step_index=step_index,
        recipient_email=request.recipient_email,
        provider=provider,
    )
    if record.status == DELIVERY_SENT:
        return record
    record.status = DELIVERY_PENDING
    record.subject = request.subject[:200]
    record.provider = provider
    record.updated_at = now
    return record


def record_delivery_success(
    db: Session,
    *,
    automation_id: str,
    enrollment_id: str,
    step_index: int,
    request: DeliveryRequest,
    result: DeliveryResult,
    now: datetime,
) -> DeliveryRecord:
    record = _record_for(
        db,
        key=request.idempotency_key,
        automation_id=automation_id,
        enrollment_id=enrollment_id,
        step_index=step_index,
        recipient_email=request.recipient_email,
        provider=result.provider,
    )
    record.status = DELIVERY_SENT
    record.subject = request.subject[:200]
    record.provider = result.provider
    record.provider_message_id = result.message_id or record.provider_message_id
    record.attempt_count += 1
    record.last_error = None
    record.sent_at = record.sent_at or now
    record.updated_at = now
    return record


def record_delivery_failure(
    db: Session,
    *,
    automation_id: str,
    enrollment_id: str,
    step_index: int,
    recipient_email: str,
    provider: str,
    error: str,
    now: datetime,
    status: str | None = None,
) -> DeliveryRecord:
    """Count a failed attempt.

    ``status`` is set only when the gateway was called: ``failed`` for a
    definite rejection, ``pending`` when the call timed out. Failures before
    the gateway call leave an earlier pending outcome in place.
    """
    record = _record_for(
        db,
        key=idempotency_key(enrollment_id, step_index),
        automation_id=automation_id,
        enrollment_id=enrollment_id,
        step_index=step_index,
        recipient_email=recipient_email,
        provider=provider,
    )
    if record.status == DELIVERY_SENT:
        return record
    if status:
        record.status = status
    record.attempt_count += 1
    record.last_error = error[:255]
    record.updated_at = now
    return record
