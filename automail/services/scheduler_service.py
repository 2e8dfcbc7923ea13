import logging
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from automail.core.config import settings
from automail.core.observability import log_worker_event
from automail.services.dispatcher import Dispatcher, TickSummary, build_dispatcher
from automail.services.trigger_listener import (
    SweepSummary,
    TriggerFeedSummary,
    process_trigger_events,
    sweep_trigger_candidates,
)

DISPATCH_JOB_ID = "automation_dispatch_tick"
TRIGGER_FEED_JOB_ID = "trigger_event_feed"
TRIGGER_SWEEP_JOB_ID = "trigger_candidate_sweep"


class SchedulerService:
    """Owns the background jobs that drive the engine.

    Created and started from the application lifespan; nothing is scheduled
    at import time.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        dispatcher: Dispatcher | None = None,
        scheduler: BackgroundScheduler | None = None,
        tick_seconds: int | None = None,
        feed_seconds: int | None = None,
        sweep_enabled: bool | None = None,
        sweep_minutes: int | None = None,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self.tick_seconds = tick_seconds or settings.scheduler_tick_seconds
        self.feed_seconds = feed_seconds or settings.trigger_feed_interval_seconds
        self.sweep_enabled = settings.trigger_sweep_enabled if sweep_enabled is None else sweep_enabled
        self.sweep_minutes = sweep_minutes or settings.trigger_sweep_interval_minutes

    @property
    def dispatcher(self) -> Dispatcher:
        if self._dispatcher is None:
            self._dispatcher = build_dispatcher(self._session_factory)
        return self._dispatcher

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def job_ids(self) -> list[str]:
        return sorted(job.id for job in self._scheduler.get_jobs())

    def start(self) -> None:
        if self.running:
            return
        job_defaults: dict[str, Any] = {"max_instances": 1, "coalesce": True, "replace_existing": True}
        self._scheduler.add_job(
            self.run_dispatch_tick,
            IntervalTrigger(seconds=self.tick_seconds),
            id=DISPATCH_JOB_ID,
            name="Automation dispatch tick",
            **job_defaults,
        )
        self._scheduler.add_job(
            self.run_trigger_feed,
            IntervalTrigger(seconds=self.feed_seconds),
            id=TRIGGER_FEED_JOB_ID,
            name="Trigger event feed",
            **job_defaults,
        )
        if self.sweep_enabled:
            self._scheduler.add_job(
                self.run_trigger_sweep,
                IntervalTrigger(minutes=self.sweep_minutes),
                id=TRIGGER_SWEEP_JOB_ID,
                name="Trigger candidate sweep",
                **job_defaults,
            )
        self._scheduler.start()
        log_worker_event("scheduler_started", jobs=self.job_ids())

    def shutdown(self, wait: bool = True) -> None:
        if self.running:
            self._scheduler.shutdown(wait=wait)
            log_worker_event("scheduler_stopped")
        if self._dispatcher is not None:
            self._dispatcher.close()
            self._dispatcher = None

    def run_dispatch_tick(self) -> TickSummary | None:
        try:
            return self.dispatcher.run_tick()
        except Exception as exc:  # noqa: BLE001 - a failed tick is retried on the next interval
            log_worker_event("dispatch_tick_failed", level=logging.ERROR, error=str(exc))
            return None

    def run_trigger_feed(self) -> TriggerFeedSummary | None:
        with self._session_factory() as db:
            try:
                summary = process_trigger_events(db)
            except Exception as exc:  # noqa: BLE001 - retried on the next interval
                db.rollback()
                log_worker_event("trigger_feed_failed", level=logging.ERROR, error=str(exc))
                return None
        if summary.processed_events or summary.failed_events:
            log_worker_event(
                "trigger_feed_completed",
                processed_events=summary.processed_events,
                enrollments_created=summary.enrollments_created,
                failed_events=summary.failed_events,
            )
        return summary

    def run_trigger_sweep(self) -> SweepSummary | None:
        with self._session_factory() as db:
            try:
                return sweep_trigger_candidates(db)
            except Exception as exc:  # noqa: BLE001 - retried on the next interval
                db.rollback()
                log_worker_event("trigger_sweep_failed", level=logging.ERROR, error=str(exc))
                return None
