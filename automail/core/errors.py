class AutomationError(ValueError):
    """Base class for errors raised by the sequencing engine."""


class ValidationError(AutomationError):
    """Malformed automation definition (step count, indices, delays, content)."""


class InvalidStateError(AutomationError):
    """Operation is not allowed for the resource's current status."""


class NotFoundError(AutomationError):
    pass


class DuplicateEnrollmentError(AutomationError):
    """An enrollment already exists for the (automation, customer) pair."""


class SkipEvaluationError(AutomationError):
    """The customer provider could not answer a skip condition."""


class DeliveryError(AutomationError):
    """Content generation or the delivery gateway failed for one step."""


class ClaimContentionError(AutomationError):
    """Another worker owns the enrollment for this tick."""


class DeliveryTimeoutError(DeliveryError):
    """An external call did not answer in time; its outcome is unknown."""
