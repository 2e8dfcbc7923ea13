import time
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from automail.core.errors import ClaimContentionError, DeliveryError
from automail.core.timeutils import as_utc
from automail.models.alert import Alert
from automail.models.customer import Customer
from automail.models.delivery import DeliveryRecord
from automail.models.enrollment import Enrollment
from automail.services.automation_service import (
    activate_automation,
    automation_stats,
    create_automation,
    get_automation,
    pause_automation,
)
from automail.services.content_source import GeneratedContent, StubContentSource
from automail.services.customer_provider import SqlCustomerProvider
from automail.services.delivery_gateway import (
    DeliveryRequest,
    DeliveryResult,
    SentKeyRegistry,
    StubDeliveryGateway,
    get_delivery_record,
)
from automail.services.dispatcher import Dispatcher
from automail.services.enrollment_service import claim_enrollment, enroll_customer, stop_enrollment
from automail.services.trigger_listener import handle_trigger_event

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class RecordingGateway:
    name = "recording"

    def __init__(self, *, failures: int = 0, on_send=None, delay_seconds: float = 0.0):
        self.requests = []
        self.attempts = 0
        self.failures = failures
        self.on_send = on_send
        self.delay_seconds = delay_seconds
        self.sent_keys = SentKeyRegistry()

    def send(self, request):
        self.attempts += 1
        if not self.sent_keys.reserve(request.idempotency_key):
            return DeliveryResult(provider=self.name, message_id=None, status="duplicate")
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.on_send:
            self.on_send(request)
        if self.failures > 0:
            self.failures -= 1
            self.sent_keys.release(request.idempotency_key)
            raise DeliveryError("mailbox unavailable")
        self.requests.append(request)
        return DeliveryResult(provider=self.name, message_id=f"m-{len(self.requests)}", status="sent")


class FixedContentSource:
    name = "fixed"

    def __init__(self):
        self.calls = []

    def generate(self, *, segment: str, purpose: str, topic: str) -> GeneratedContent:
        self.calls.append((segment, purpose, topic))
        return GeneratedContent(subject=f"Generated for {segment}", body="<p>Generated</p>")


class FailingContentSource:
    name = "failing"

    def generate(self, *, segment: str, purpose: str, topic: str) -> GeneratedContent:
        raise RuntimeError("model offline")


class ExplodingProvider:
    name = "exploding"

    def get_customer(self, customer_id):
        raise RuntimeError("directory corrupted")

    def has_purchased_since(self, customer_id, since):
        raise RuntimeError("directory corrupted")

    def current_segment(self, customer_id):
        raise RuntimeError("directory corrupted")


def _step(index: int, delay: int = 0, **overrides) -> dict:
    step = {
        "step_index": index,
        "delay_minutes": delay,
        "subject": f"Step {index}",
        "html_body": f"<p>Body {index}</p>",
        "use_ai_generation": False,
        "skip_condition": None,
    }
    step.update(overrides)
    return step


def _seed_automation(session_local, *, trigger: str = "welcome", steps=None, activate: bool = True) -> str:
    with session_local() as db:
        automation = create_automation(
            db,
            name="Sequence",
            trigger_type=trigger,
            steps=steps or [_step(0), _step(1, 1440)],
            now=T0,
        )
        if activate:
            activate_automation(db, automation.id, now=T0)
        db.commit()
        return automation.id


def _add_customer(session_local, customer_id: str = "cus-1", **fields) -> None:
    values = {
        "email": f"{customer_id}@example.com",
        "name": "Grace",
        "segment": "new",
        "registered_at": T0,
    }
    values.update(fields)
    with session_local() as db:
        db.add(Customer(id=customer_id, **values))
        db.commit()


def _register(session_local, customer_id: str = "cus-1", now: datetime = T0) -> list[str]:
    with session_local() as db:
        created = handle_trigger_event(db, event_type="customer_registered", customer_id=customer_id, now=now)
        return [enrollment.id for enrollment in created]


def _enrollment(session_local, enrollment_id: str) -> Enrollment:
    with session_local() as db:
        return db.execute(select(Enrollment).where(Enrollment.id == enrollment_id)).scalar_one()


def _alerts(session_local, alert_type: str) -> list[Alert]:
    with session_local() as db:
        return list(db.execute(select(Alert).where(Alert.type == alert_type)).scalars().all())


@pytest.fixture()
def make_dispatcher(test_context):
    _, session_local = test_context
    created: list[Dispatcher] = []

    def factory(gateway, **overrides):
        overrides.setdefault("provider", SqlCustomerProvider(session_local))
        overrides.setdefault("content_source", StubContentSource())
        overrides.setdefault("max_workers", 1)
        overrides.setdefault("call_timeout_seconds", 5)
        overrides.setdefault("retry_backoff_minutes", 15)
        overrides.setdefault("max_attempts", 3)
        overrides.setdefault("lease_seconds", 300)
        overrides.setdefault("worker_id", "worker-test")
        dispatcher = Dispatcher(session_local, gateway=gateway, **overrides)
        created.append(dispatcher)
        return dispatcher

    yield factory
    for dispatcher in created:
        dispatcher.close()


def test_welcome_sequence_sends_both_steps_then_completes(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(session_local)
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)
    gateway = RecordingGateway()
    dispatcher = make_dispatcher(gateway)

    first = dispatcher.run_tick(T0)
    assert first.processed == 1
    assert first.sent == 1
    assert first.completed == 0
    after_first = _enrollment(session_local, enrollment_id)
    assert after_first.status == "active"
    assert after_first.current_step_index == 1
    assert as_utc(after_first.next_send_at) == T0 + timedelta(minutes=1440)

    early = dispatcher.run_tick(T0 + timedelta(hours=23))
    assert early.processed == 0

    second = dispatcher.run_tick(T0 + timedelta(days=1))
    assert second.sent == 1
    assert second.completed == 1

    done = _enrollment(session_local, enrollment_id)
    assert done.status == "completed"
    assert done.next_send_at is None
    assert as_utc(done.completed_at) == T0 + timedelta(days=1)
    assert [request.subject for request in gateway.requests] == ["Step 0", "Step 1"]
    assert [request.idempotency_key for request in gateway.requests] == [
        f"{enrollment_id}:0",
        f"{enrollment_id}:1",
    ]
    assert gateway.requests[0].recipient_email == "cus-1@example.com"

    nothing_left = dispatcher.run_tick(T0 + timedelta(days=10))
    assert nothing_left.processed == 0


def test_purchase_since_trigger_skips_rest_of_sequence(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(
        session_local,
        steps=[_step(0), _step(1, 1440, skip_condition="purchased_since_trigger"), _step(2, 1440)],
    )
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)
    gateway = RecordingGateway()
    dispatcher = make_dispatcher(gateway)

    dispatcher.run_tick(T0)
    with session_local() as db:
        db.execute(
            update(Customer)
            .where(Customer.id == "cus-1")
            .values(last_purchase_at=T0 + timedelta(hours=2), segment="active")
        )
        db.commit()

    summary = dispatcher.run_tick(T0 + timedelta(days=1))

    assert summary.skipped == 1
    assert summary.sent == 0
    skipped = _enrollment(session_local, enrollment_id)
    assert skipped.status == "skipped"
    assert skipped.next_send_at is None
    assert len(gateway.requests) == 1
    assert dispatcher.run_tick(T0 + timedelta(days=5)).processed == 0


def test_purchase_before_enrollment_does_not_skip(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(session_local, steps=[_step(0, skip_condition="purchased_since_trigger")])
    _add_customer(session_local, last_purchase_at=T0 - timedelta(days=3))
    [enrollment_id] = _register(session_local)
    gateway = RecordingGateway()

    summary = make_dispatcher(gateway).run_tick(T0)

    assert summary.sent == 1
    assert _enrollment(session_local, enrollment_id).status == "completed"


def test_became_active_skip_condition(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(session_local, steps=[_step(0, 60, skip_condition="became_active")])
    _add_customer(session_local, segment="active")
    [enrollment_id] = _register(session_local)
    gateway = RecordingGateway()

    summary = make_dispatcher(gateway).run_tick(T0 + timedelta(hours=1))

    assert summary.skipped == 1
    assert gateway.requests == []
    assert _enrollment(session_local, enrollment_id).status == "skipped"


def test_paused_automation_holds_enrollments_until_resumed(test_context, make_dispatcher):
    _, session_local = test_context
    automation_id = _seed_automation(session_local, steps=[_step(0, 60), _step(1, 60)])
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)
    with session_local() as db:
        pause_automation(db, automation_id, now=T0)
        db.commit()
    gateway = RecordingGateway()
    dispatcher = make_dispatcher(gateway)

    held = dispatcher.run_tick(T0 + timedelta(hours=3))
    assert held.processed == 0
    waiting = _enrollment(session_local, enrollment_id)
    assert waiting.status == "active"
    assert as_utc(waiting.next_send_at) == T0 + timedelta(minutes=60)

    with session_local() as db:
        activate_automation(db, automation_id)
        db.commit()
    resumed_at = T0 + timedelta(hours=4)
    resumed = dispatcher.run_tick(resumed_at)

    assert resumed.sent == 1
    advanced = _enrollment(session_local, enrollment_id)
    assert advanced.current_step_index == 1
    assert as_utc(advanced.next_send_at) == resumed_at + timedelta(minutes=60)


def test_manual_stop_during_send_is_not_overwritten(test_context, make_dispatcher):
    _, session_local = test_context
    automation_id = _seed_automation(session_local)
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)

    def stop_while_sending(request):
        with session_local() as db:
            stop_enrollment(db, automation_id, enrollment_id)
            db.commit()

    gateway = RecordingGateway(on_send=stop_while_sending)
    summary = make_dispatcher(gateway).run_tick(T0)

    assert summary.sent == 1
    assert summary.superseded == 1
    stopped = _enrollment(session_local, enrollment_id)
    assert stopped.status == "stopped"
    assert stopped.stop_reason == "manual"
    assert stopped.current_step_index == 0
    assert stopped.next_send_at is None
    with session_local() as db:
        record = db.execute(
            select(DeliveryRecord).where(DeliveryRecord.idempotency_key == f"{enrollment_id}:0")
        ).scalar_one()
        assert record.status == "sent"


def test_repeated_trigger_does_not_duplicate_enrollment(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(session_local, steps=[_step(0)])
    _add_customer(session_local)

    first = _register(session_local)
    second = _register(session_local, now=T0 + timedelta(minutes=5))
    assert len(first) == 1
    assert second == []

    make_dispatcher(RecordingGateway()).run_tick(T0 + timedelta(minutes=5))
    after_completion = _register(session_local, now=T0 + timedelta(days=2))
    assert after_completion == []
    with session_local() as db:
        count = len(db.execute(select(Enrollment)).scalars().all())
    assert count == 1


def test_delivery_failures_retry_then_stop_with_one_alert(test_context, make_dispatcher):
    _, session_local = test_context
    automation_id = _seed_automation(session_local)
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)
    gateway = RecordingGateway(failures=10)
    dispatcher = make_dispatcher(gateway)

    first = dispatcher.run_tick(T0)
    assert first.retried == 1
    retrying = _enrollment(session_local, enrollment_id)
    assert retrying.attempt_count == 1
    assert as_utc(retrying.next_send_at) == T0 + timedelta(minutes=15)
    assert retrying.last_error == "mailbox unavailable"

    assert dispatcher.run_tick(T0 + timedelta(minutes=5)).processed == 0
    assert dispatcher.run_tick(T0 + timedelta(minutes=15)).retried == 1
    final = dispatcher.run_tick(T0 + timedelta(minutes=30))
    assert final.stopped == 1

    stopped = _enrollment(session_local, enrollment_id)
    assert stopped.status == "stopped"
    assert stopped.stop_reason == "delivery_failed"
    assert stopped.attempt_count == 3
    assert stopped.next_send_at is None
    assert gateway.attempts == 3

    alerts = _alerts(session_local, "delivery_failure")
    assert len(alerts) == 1
    assert alerts[0].metadata_json["enrollment_id"] == enrollment_id
    assert dispatcher.run_tick(T0 + timedelta(hours=2)).processed == 0

    with session_local() as db:
        stats = automation_stats(db, automation_id)
    assert stats.total_failed == 1
    assert stats.total_sent == 0
    assert stats.stopped == 1


def test_successful_retry_resets_attempt_count(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(session_local)
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)
    gateway = RecordingGateway(failures=1)
    dispatcher = make_dispatcher(gateway)

    dispatcher.run_tick(T0)
    recovered = dispatcher.run_tick(T0 + timedelta(minutes=15))

    assert recovered.sent == 1
    enrollment = _enrollment(session_local, enrollment_id)
    assert enrollment.current_step_index == 1
    assert enrollment.attempt_count == 0
    assert enrollment.last_error is None
    assert _alerts(session_local, "delivery_failure") == []


def test_already_sent_step_is_not_sent_again(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(session_local, steps=[_step(0), _step(1, 60)])
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)
    gateway = RecordingGateway()
    dispatcher = make_dispatcher(gateway)
    dispatcher.run_tick(T0)

    # Simulates a worker that crashed after sending but before advancing.
    with session_local() as db:
        db.execute(
            update(Enrollment)
            .where(Enrollment.id == enrollment_id)
            .values(current_step_index=0, next_send_at=T0)
        )
        db.commit()

    replay_at = T0 + timedelta(minutes=1)
    summary = dispatcher.run_tick(replay_at)

    assert summary.processed == 1
    assert summary.sent == 0
    assert len(gateway.requests) == 1
    enrollment = _enrollment(session_local, enrollment_id)
    assert enrollment.current_step_index == 1
    assert as_utc(enrollment.next_send_at) == replay_at + timedelta(minutes=60)


def test_generated_content_uses_trigger_audience(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(
        session_local,
        trigger="reactivation",
        steps=[_step(0, use_ai_generation=True, ai_purpose="reactivation", ai_topic="new arrivals", subject="", html_body="")],
    )
    _add_customer(session_local, segment="lapsed")
    with session_local() as db:
        handle_trigger_event(
            db,
            event_type="segment_changed",
            customer_id="cus-1",
            payload={"segment": "lapsed"},
            now=T0,
        )
    content_source = FixedContentSource()
    gateway = RecordingGateway()

    summary = make_dispatcher(gateway, content_source=content_source).run_tick(T0)

    assert summary.sent == 1
    assert content_source.calls == [("lapsed", "reactivation", "new arrivals")]
    assert gateway.requests[0].subject == "Generated for lapsed"


def test_failed_generation_falls_back_to_static_content(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(
        session_local,
        steps=[_step(0, use_ai_generation=True, subject="Static hello", html_body="<p>Static</p>")],
    )
    _add_customer(session_local)
    _register(session_local)
    gateway = RecordingGateway()

    summary = make_dispatcher(gateway, content_source=FailingContentSource()).run_tick(T0)

    assert summary.sent == 1
    assert gateway.requests[0].subject == "Static hello"
    assert gateway.requests[0].html_body == "<p>Static</p>"


def test_failed_generation_without_static_content_is_retried(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(session_local, steps=[_step(0, use_ai_generation=True, subject="", html_body="")])
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)
    gateway = RecordingGateway()

    summary = make_dispatcher(gateway, content_source=FailingContentSource()).run_tick(T0)

    assert summary.retried == 1
    assert gateway.attempts == 0
    enrollment = _enrollment(session_local, enrollment_id)
    assert enrollment.attempt_count == 1
    assert "model offline" in enrollment.last_error


def test_opted_out_and_missing_customers_are_stopped(test_context, make_dispatcher):
    _, session_local = test_context
    automation_id = _seed_automation(session_local, steps=[_step(0)])
    _add_customer(session_local, "cus-1")
    [opted_out_id] = _register(session_local, "cus-1")
    with session_local() as db:
        db.execute(update(Customer).where(Customer.id == "cus-1").values(marketing_opt_out_at=T0))
        missing_id = enroll_customer(db, automation=get_automation(db, automation_id), customer_id="ghost", now=T0).id
    gateway = RecordingGateway()

    summary = make_dispatcher(gateway).run_tick(T0)

    assert summary.stopped == 2
    assert gateway.requests == []
    assert _enrollment(session_local, opted_out_id).stop_reason == "opted_out"
    assert _enrollment(session_local, missing_id).stop_reason == "customer_missing"


def test_claimed_enrollment_waits_for_lease_expiry(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(session_local, steps=[_step(0)])
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)
    with session_local() as db:
        claim_enrollment(db, enrollment_id, version=1, worker_id="crashed-worker", now=T0, lease_seconds=300)

    gateway = RecordingGateway()
    dispatcher = make_dispatcher(gateway)

    assert dispatcher.run_tick(T0 + timedelta(seconds=60)).processed == 0
    recovered = dispatcher.run_tick(T0 + timedelta(seconds=301))
    assert recovered.sent == 1
    assert _enrollment(session_local, enrollment_id).status == "completed"


def test_stale_version_claim_is_rejected(test_context):
    _, session_local = test_context
    _seed_automation(session_local, steps=[_step(0)])
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)

    with session_local() as db:
        claim = claim_enrollment(db, enrollment_id, version=1, worker_id="a", now=T0, lease_seconds=1)
    assert claim.version == 2
    with session_local() as db:
        with pytest.raises(ClaimContentionError):
            claim_enrollment(
                db,
                enrollment_id,
                version=1,
                worker_id="b",
                now=T0 + timedelta(seconds=5),
                lease_seconds=1,
            )


def test_slow_gateway_times_out_and_is_retried(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(session_local, steps=[_step(0)])
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)
    gateway = RecordingGateway(delay_seconds=1.5)

    summary = make_dispatcher(gateway, call_timeout_seconds=0.25).run_tick(T0)

    assert summary.retried == 1
    enrollment = _enrollment(session_local, enrollment_id)
    assert enrollment.attempt_count == 1
    assert "timed out" in enrollment.last_error
    with session_local() as db:
        record = get_delivery_record(db, f"{enrollment_id}:0")
        assert record.status == "pending"


def test_timed_out_send_that_lands_late_is_not_sent_again(test_context, make_dispatcher):
    _, session_local = test_context
    automation_id = _seed_automation(session_local, steps=[_step(0)])
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)
    gateway = RecordingGateway(delay_seconds=0.6)
    dispatcher = make_dispatcher(gateway, call_timeout_seconds=0.2)

    assert dispatcher.run_tick(T0).retried == 1
    # The abandoned call finishes and the message goes out after the tick gave up on it.
    time.sleep(1.0)
    retry = dispatcher.run_tick(T0 + timedelta(minutes=15))

    assert retry.completed == 1
    assert retry.sent == 0
    assert [request.idempotency_key for request in gateway.requests] == [f"{enrollment_id}:0"]
    assert gateway.attempts == 2
    assert _enrollment(session_local, enrollment_id).status == "completed"
    with session_local() as db:
        record = get_delivery_record(db, f"{enrollment_id}:0")
        assert record.status == "sent"
        assert record.last_error is None
        stats = automation_stats(db, automation_id)
    assert stats.total_sent == 1
    assert stats.total_failed == 0


def test_pending_delivery_is_resolved_by_the_gateway(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(session_local, steps=[_step(0), _step(1, 60)])
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)
    gateway = RecordingGateway()
    key = f"{enrollment_id}:0"
    # A worker died after handing the step to the gateway.
    assert gateway.sent_keys.reserve(key)
    with session_local() as db:
        enrollment = db.get(Enrollment, enrollment_id)
        db.add(
            DeliveryRecord(
                id="del-1",
                idempotency_key=key,
                automation_id=enrollment.automation_id,
                enrollment_id=enrollment_id,
                step_index=0,
                recipient_email="ada@example.com",
                subject="Step 0",
                provider=gateway.name,
                status="pending",
                attempt_count=0,
            )
        )
        db.commit()

    summary = make_dispatcher(gateway).run_tick(T0)

    assert summary.processed == 1
    assert summary.sent == 0
    assert gateway.requests == []
    assert _enrollment(session_local, enrollment_id).current_step_index == 1
    with session_local() as db:
        assert get_delivery_record(db, key).status == "sent"


def test_stub_gateway_answers_repeated_key_as_duplicate():
    gateway = StubDeliveryGateway(registry=SentKeyRegistry())
    request = DeliveryRequest(
        idempotency_key="enr-1:0",
        recipient_email="ada@example.com",
        recipient_name="Ada",
        subject="Hello",
        html_body="<p>Hello</p>",
    )

    first = gateway.send(request)
    second = gateway.send(request)

    assert first.status == "sent"
    assert first.message_id
    assert second.status == "duplicate"
    assert second.message_id is None


def test_failing_customer_lookup_counts_toward_retry_cap(test_context, make_dispatcher):
    _, session_local = test_context
    _seed_automation(session_local, steps=[_step(0)])
    _add_customer(session_local)
    [enrollment_id] = _register(session_local)
    dispatcher = make_dispatcher(RecordingGateway(), provider=ExplodingProvider())

    first = dispatcher.run_tick(T0)
    assert first.retried == 1
    assert first.errors == 0
    assert _enrollment(session_local, enrollment_id).attempt_count == 1
    assert dispatcher.run_tick(T0 + timedelta(minutes=15)).retried == 1
    final = dispatcher.run_tick(T0 + timedelta(minutes=30))

    assert final.stopped == 1
    assert final.errors == 0
    stopped = _enrollment(session_local, enrollment_id)
    assert stopped.status == "stopped"
    assert stopped.stop_reason == "delivery_failed"
    assert stopped.attempt_count == 3
    assert "directory corrupted" in stopped.last_error
    assert len(_alerts(session_local, "delivery_failure")) == 1
    assert _alerts(session_local, "dispatch_error") == []
    assert dispatcher.run_tick(T0 + timedelta(hours=2)).processed == 0


def test_unexpected_errors_raise_dispatch_alert(test_context, make_dispatcher, monkeypatch):
    _, session_local = test_context
    _seed_automation(session_local, steps=[_step(0)])
    for index in range(3):
        _add_customer(session_local, f"cus-{index}")
        _register(session_local, f"cus-{index}")

    def broken_renderer(*args, **kwargs):
        raise RuntimeError("template registry corrupted")

    monkeypatch.setattr("automail.services.dispatcher.resolve_step_content", broken_renderer)
    summary = make_dispatcher(RecordingGateway()).run_tick(T0)

    assert summary.processed == 3
    assert summary.errors == 3
    alerts = _alerts(session_local, "dispatch_error")
    assert len(alerts) == 1
    assert alerts[0].severity == "critical"


def test_queue_run_endpoint_dispatches_due_steps(test_context):
    client, session_local = test_context
    created = client.post(
        "/automations",
        json={
            "name": "Welcome",
            "triggerType": "welcome",
            "steps": [
                {"stepIndex": 0, "delayMinutes": 0, "subject": "Hi", "htmlBody": "<p>Hi</p>"},
                {"stepIndex": 1, "delayMinutes": 60, "subject": "Again", "htmlBody": "<p>Again</p>"},
            ],
        },
    )
    automation_id = created.json()["id"]
    client.post(f"/automations/{automation_id}/activate")
    _add_customer(session_local, registered_at=datetime.now(timezone.utc))

    queued = client.post("/events", json={"eventType": "customer_registered", "customerId": "cus-1"})
    assert queued.status_code == 202, queued.text
    processed = client.post("/events/process")
    assert processed.json()["enrollmentsCreated"] == 1

    run = client.post("/automations/queue/run")
    assert run.status_code == 200, run.text
    assert run.json()["processed"] == 1
    assert run.json()["sent"] == 1

    detail = client.get(f"/automations/{automation_id}")
    assert detail.json()["stats"]["totalSent"] == 1
    assert detail.json()["stats"]["active"] == 1
    listing = client.get("/automations")
    assert listing.json()["automations"][0]["totalSent"] == 1
