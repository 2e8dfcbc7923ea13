import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from automail.core.enums import CustomerSegment, SkipCondition
from automail.core.errors import SkipEvaluationError
from automail.core.observability import log_worker_event
from automail.services.customer_provider import CustomerProvider
from automail.services.enrollment_service import ClaimedEnrollment

T = TypeVar("T")
Runner = Callable[[Callable[[], Any]], Any]
SkipHandler = Callable[[CustomerProvider, ClaimedEnrollment, datetime], bool]


def _purchased_since_trigger(provider: CustomerProvider, enrollment: ClaimedEnrollment, now: datetime) -> bool:
    return provider.has_purchased_since(enrollment.customer_id, enrollment.enrolled_at)


def _became_active(provider: CustomerProvider, enrollment: ClaimedEnrollment, now: datetime) -> bool:
    return provider.current_segment(enrollment.customer_id) == CustomerSegment.ACTIVE.value


# One handler per SkipCondition member.
SKIP_HANDLERS: dict[SkipCondition, SkipHandler] = {
    SkipCondition.PURCHASED_SINCE_TRIGGER: _purchased_since_trigger,
    SkipCondition.BECAME_ACTIVE: _became_active,
}


class SkipEvaluator:
    """Decides at dispatch time whether a step's skip condition holds.

    Provider failures and timeouts fail closed: the step is sent.
    """

    def __init__(self, provider: CustomerProvider, *, runner: Runner | None = None):
        self._provider = provider
        self._runner = runner

    def evaluate(self, condition: SkipCondition | str | None, enrollment: ClaimedEnrollment, now: datetime) -> bool:
        if condition is None:
            return False
        try:
            member = SkipCondition(condition)
        except ValueError:
            log_worker_event(
                "unknown_skip_condition",
                level=logging.WARNING,
                enrollment_id=enrollment.id,
                condition=str(condition),
            )
            return False

        handler = SKIP_HANDLERS[member]
        try:
            return bool(self._call(lambda: handler(self._provider, enrollment, now)))
        except SkipEvaluationError as exc:
            log_worker_event(
                "skip_evaluation_failed",
                level=logging.WARNING,
                enrollment_id=enrollment.id,
                condition=member.value,
                error=str(exc),
            )
            return False

    def _call(self, fn: Callable[[], T]) -> T:
        try:
            if self._runner is None:
                return fn()
            return self._runner(fn)
        except Exception as exc:  # noqa: BLE001 - provider errors become a fail-closed evaluation
            raise SkipEvaluationError(str(exc) or exc.__class__.__name__) from exc
