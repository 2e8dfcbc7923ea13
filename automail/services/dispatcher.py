import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy.orm import sessionmaker

from automail.core.config import settings
from automail.core.enums import StopReason
from automail.core.errors import ClaimContentionError, DeliveryError, DeliveryTimeoutError
from automail.core.id_utils import generate_short_token
from automail.core.observability import log_worker_event
from automail.core.timeutils import utcnow
from automail.services.alert_service import ALERT_DELIVERY_FAILURE, ALERT_DISPATCH_ERROR, raise_alert
from automail.services.content_source import ContentSource, get_content_source, resolve_step_content
from automail.services.customer_provider import CustomerProvider, CustomerSnapshot, SqlCustomerProvider
from automail.services.delivery_gateway import (
    DELIVERY_DUPLICATE,
    DELIVERY_FAILED,
    DELIVERY_PENDING,
    DELIVERY_SENT,
    DeliveryGateway,
    DeliveryRequest,
    get_delivery_gateway,
    get_delivery_record,
    idempotency_key,
    record_delivery_failure,
    record_delivery_pending,
    record_delivery_success,
)
from automail.services.enrollment_service import (
    ClaimedEnrollment,
    advance_enrollment,
    claim_enrollment,
    complete_enrollment,
    find_due_enrollments,
    reschedule_enrollment,
    skip_enrollment,
    stop_claimed_enrollment,
)
from automail.services.skip_evaluator import SkipEvaluator

T = TypeVar("T")

OUTCOME_ADVANCED = "advanced"
OUTCOME_COMPLETED = "completed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_RETRIED = "retried"
OUTCOME_STOPPED = "stopped"
OUTCOME_CONTENDED = "contended"
OUTCOME_SUPERSEDED = "superseded"


@dataclass(frozen=True)
class DispatchOutcome:
    enrollment_id: str
    outcome: str
    delivered: bool = False


@dataclass
class TickSummary:
    processed: int = 0
    sent: int = 0
    completed: int = 0
    skipped: int = 0
    retried: int = 0
    stopped: int = 0
    contended: int = 0
    superseded: int = 0
    errors: int = 0

    def record(self, result: DispatchOutcome) -> None:
        if result.delivered:
            self.sent += 1
        if result.outcome == OUTCOME_COMPLETED:
            self.completed += 1
        elif result.outcome == OUTCOME_SKIPPED:
            self.skipped += 1
        elif result.outcome == OUTCOME_RETRIED:
            self.retried += 1
        elif result.outcome == OUTCOME_STOPPED:
            self.stopped += 1
        elif result.outcome == OUTCOME_CONTENDED:
            self.contended += 1
        elif result.outcome == OUTCOME_SUPERSEDED:
            self.superseded += 1

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class Dispatcher:
    """Moves due enrollments forward one step per tick.

    Each due enrollment is claimed and processed by one worker from a bounded
    pool. External calls run on a separate pool so they can be abandoned on
    timeout. Sessions are never held open across an external call.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        provider: CustomerProvider,
        content_source: ContentSource,
        gateway: DeliveryGateway,
        max_workers: int | None = None,
        batch_size: int | None = None,
        lease_seconds: int | None = None,
        call_timeout_seconds: float | None = None,
        retry_backoff_minutes: int | None = None,
        max_attempts: int | None = None,
        error_alert_threshold: int | None = None,
        worker_id: str | None = None,
    ):
        self._session_factory = session_factory
        self._provider = provider
        self._content_source = content_source
        self._gateway = gateway
        self.max_workers = max_workers or settings.dispatch_max_workers
        self.batch_size = batch_size or settings.dispatch_batch_size
        self.lease_seconds = lease_seconds or settings.claim_lease_seconds
        self.call_timeout_seconds = call_timeout_seconds or settings.external_call_timeout_seconds
        self.retry_backoff = timedelta(
            minutes=settings.delivery_retry_backoff_minutes if retry_backoff_minutes is None else retry_backoff_minutes
        )
        self.max_attempts = max_attempts or settings.delivery_max_attempts
        self.error_alert_threshold = error_alert_threshold or settings.dispatch_error_alert_threshold
        self.worker_id = worker_id or f"dispatcher-{generate_short_token(8)}"

        self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="automail-dispatch")
        self._call_pool = ThreadPoolExecutor(max_workers=self.max_workers * 2, thread_name_prefix="automail-call")
        self._skip_evaluator = SkipEvaluator(provider, runner=self.call_with_timeout)

    def close(self) -> None:
        self._pool.shutdown(wait=True)
        self._call_pool.shutdown(wait=False, cancel_futures=True)

    def call_with_timeout(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        future = self._call_pool.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.call_timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            name = getattr(fn, "__qualname__", repr(fn))
            raise DeliveryTimeoutError(f"{name} timed out after {self.call_timeout_seconds}s") from None

    def run_tick(self, now: datetime | None = None) -> TickSummary:
        now = now or utcnow()
        with self._session_factory() as db:
            due = find_due_enrollments(db, now=now, limit=self.batch_size)

        summary = TickSummary()
        futures = {
            self._pool.submit(self.process_enrollment, item.id, item.version, now): item.id
            for item in due
        }
        for future in as_completed(futures):
            summary.processed += 1
            try:
                result = future.result()
            except Exception as exc:  # noqa: BLE001 - one enrollment must not abort the tick
                summary.errors += 1
                log_worker_event(
                    "dispatch_error",
                    level=logging.ERROR,
                    enrollment_id=futures[future],
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                continue
            summary.record(result)

        if summary.errors >= self.error_alert_threshold:
            with self._session_factory() as db:
                raise_alert(
                    db,
                    type=ALERT_DISPATCH_ERROR,
                    severity="critical",
                    title="Automation dispatch errors",
                    message=f"{summary.errors} enrollment(s) failed with unexpected errors in one tick",
                    metadata_json=summary.to_dict(),
                    now=now,
                )
                db.commit()

        log_worker_event("tick_completed", worker_id=self.worker_id, **summary.to_dict())
        return summary

    def process_enrollment(self, enrollment_id: str, version: int, now: datetime) -> DispatchOutcome:
        with self._session_factory() as db:
            try:
                claim = claim_enrollment(
                    db,
                    enrollment_id,
                    version=version,
                    worker_id=self.worker_id,
                    now=now,
                    lease_seconds=self.lease_seconds,
                )
            except ClaimContentionError:
                log_worker_event("enrollment_contended", enrollment_id=enrollment_id)
                return DispatchOutcome(enrollment_id, OUTCOME_CONTENDED)

        step = claim.current_step
        if step is None:
            return self._finish(claim, now, complete=True, delivered=False)

        key = idempotency_key(claim.id, step.step_index)
        with self._session_factory() as db:
            record = get_delivery_record(db, key)
            prior_status = record.status if record else None
        if prior_status == DELIVERY_SENT:
            log_worker_event("delivery_deduplicated", enrollment_id=claim.id, idempotency_key=key)
            return self._finish(claim, now, complete=claim.is_last_step, delivered=False)
        if prior_status == DELIVERY_PENDING:
            # An earlier send timed out or its worker died; the gateway decides.
            log_worker_event("delivery_outcome_unknown", enrollment_id=claim.id, idempotency_key=key)

        try:
            customer = self.call_with_timeout(self._provider.get_customer, claim.customer_id)
        except DeliveryError as exc:
            return self._handle_failure(claim, None, exc, now)
        except Exception as exc:  # noqa: BLE001 - provider errors count toward the retry cap
            return self._handle_failure(claim, None, DeliveryError(f"{self._provider.name}: {exc}"), now)
        if customer is None:
            return self._stop(claim, StopReason.CUSTOMER_MISSING, now)
        if customer.opted_out:
            return self._stop(claim, StopReason.OPTED_OUT, now)

        if self._skip_evaluator.evaluate(step.skip_condition, claim, now):
            with self._session_factory() as db:
                written = skip_enrollment(db, claim, now=now)
                db.commit()
            if not written:
                return self._superseded(claim, delivered=False)
            log_worker_event(
                "enrollment_skipped",
                enrollment_id=claim.id,
                step_index=step.step_index,
                condition=step.skip_condition,
            )
            return DispatchOutcome(claim.id, OUTCOME_SKIPPED)

        try:
            content = resolve_step_content(
                self._content_source,
                step,
                claim.trigger_type,
                runner=self.call_with_timeout,
            )
        except DeliveryError as exc:
            return self._handle_failure(claim, customer, exc, now)
        request = DeliveryRequest(
            idempotency_key=key,
            recipient_email=customer.email,
            recipient_name=customer.name,
            subject=content.subject,
            html_body=content.html_body,
        )

        # Persisted before the gateway call so a lost reply is never mistaken for "not sent".
        with self._session_factory() as db:
            record_delivery_pending(
                db,
                automation_id=claim.automation_id,
                enrollment_id=claim.id,
                step_index=step.step_index,
                request=request,
                provider=self._gateway.name,
                now=now,
            )
            db.commit()

        try:
            result = self._deliver(request)
        except DeliveryTimeoutError as exc:
            return self._handle_failure(claim, customer, exc, now, delivery_status=DELIVERY_PENDING)
        except DeliveryError as exc:
            return self._handle_failure(claim, customer, exc, now, delivery_status=DELIVERY_FAILED)
        delivered = result.status != DELIVERY_DUPLICATE

        with self._session_factory() as db:
            record_delivery_success(
                db,
                automation_id=claim.automation_id,
                enrollment_id=claim.id,
                step_index=step.step_index,
                request=request,
                result=result,
                now=now,
            )
            if claim.is_last_step:
                written = complete_enrollment(db, claim, now=now)
            else:
                written = advance_enrollment(db, claim, now=now)
            db.commit()

        if not written:
            return self._superseded(claim, delivered=delivered)
        log_worker_event(
            "step_sent" if delivered else "delivery_deduplicated",
            enrollment_id=claim.id,
            step_index=step.step_index,
            provider=result.provider,
            content_mode=content.mode.value,
        )
        outcome = OUTCOME_COMPLETED if claim.is_last_step else OUTCOME_ADVANCED
        return DispatchOutcome(claim.id, outcome, delivered=delivered)

    def _deliver(self, request: DeliveryRequest):
        try:
            return self.call_with_timeout(self._gateway.send, request)
        except DeliveryError:
            raise
        except Exception as exc:  # noqa: BLE001 - gateway errors are delivery failures
            raise DeliveryError(f"{self._gateway.name}: {exc}") from exc

    def _finish(self, claim: ClaimedEnrollment, now: datetime, *, complete: bool, delivered: bool) -> DispatchOutcome:
        with self._session_factory() as db:
            if complete:
                written = complete_enrollment(db, claim, now=now)
            else:
                written = advance_enrollment(db, claim, now=now)
            db.commit()
        if not written:
            return self._superseded(claim, delivered=delivered)
        return DispatchOutcome(claim.id, OUTCOME_COMPLETED if complete else OUTCOME_ADVANCED, delivered=delivered)

    def _stop(self, claim: ClaimedEnrollment, reason: StopReason, now: datetime) -> DispatchOutcome:
        with self._session_factory() as db:
            written = stop_claimed_enrollment(db, claim, reason=reason, now=now)
            db.commit()
        if not written:
            return self._superseded(claim, delivered=False)
        log_worker_event("enrollment_stopped", enrollment_id=claim.id, reason=reason.value)
        return DispatchOutcome(claim.id, OUTCOME_STOPPED)

    def _superseded(self, claim: ClaimedEnrollment, *, delivered: bool) -> DispatchOutcome:
        log_worker_event(
            "enrollment_superseded",
            enrollment_id=claim.id,
            step_index=claim.current_step_index,
            delivered=delivered,
        )
        return DispatchOutcome(claim.id, OUTCOME_SUPERSEDED, delivered=delivered)

    def _handle_failure(
        self,
        claim: ClaimedEnrollment,
        customer: CustomerSnapshot | None,
        exc: DeliveryError,
        now: datetime,
        *,
        delivery_status: str | None = None,
    ) -> DispatchOutcome:
        error = str(exc) or "Delivery failed"
        attempts = claim.attempt_count + 1
        exhausted = attempts >= self.max_attempts
        with self._session_factory() as db:
            if customer is not None:
                record_delivery_failure(
                    db,
                    automation_id=claim.automation_id,
                    enrollment_id=claim.id,
                    step_index=claim.current_step_index,
                    recipient_email=customer.email,
                    provider=self._gateway.name,
                    error=error,
                    now=now,
                    status=delivery_status,
                )
            if exhausted:
                written = stop_claimed_enrollment(
                    db,
                    claim,
                    reason=StopReason.DELIVERY_FAILED,
                    now=now,
                    error=error,
                    attempt_count=attempts,
                )
                if written:
                    raise_alert(
                        db,
                        type=ALERT_DELIVERY_FAILURE,
                        severity="warning",
                        title="Automation email delivery failed",
                        message=(
                            f"Step {claim.current_step_index + 1} could not be delivered after "
                            f"{attempts} attempts; the enrollment was stopped. Last error: {error}"
                        ),
                        metadata_json={
                            "automation_id": claim.automation_id,
                            "enrollment_id": claim.id,
                            "customer_id": claim.customer_id,
                            "step_index": claim.current_step_index,
                            "attempts": attempts,
                        },
                        now=now,
                    )
            else:
                written = reschedule_enrollment(
                    db,
                    claim,
                    attempt_count=attempts,
                    next_send_at=now + self.retry_backoff,
                    error=error,
                    now=now,
                )
            db.commit()

        if not written:
            return self._superseded(claim, delivered=False)
        log_worker_event(
            "delivery_failed",
            level=logging.WARNING,
            enrollment_id=claim.id,
            step_index=claim.current_step_index,
            attempts=attempts,
            exhausted=exhausted,
            error=error,
        )
        return DispatchOutcome(claim.id, OUTCOME_STOPPED if exhausted else OUTCOME_RETRIED)


def build_dispatcher(session_factory: sessionmaker, **overrides: Any) -> Dispatcher:
    """Dispatcher wired to the providers named in settings."""
    overrides.setdefault("provider", SqlCustomerProvider(session_factory))
    overrides.setdefault("content_source", get_content_source())
    overrides.setdefault("gateway", get_delivery_gateway())
    return Dispatcher(session_factory, **overrides)
