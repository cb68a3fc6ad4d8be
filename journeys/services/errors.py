class JourneyError(Exception):
    pass


class AutomationError(ValueError):
    """Lifecycle or definition error raised by the authoring API."""


class AutomationNotFound(AutomationError):
    pass


class PredicateError(ValueError):
    """A predicate could not be evaluated against the given data."""


class TriggerPredicateError(JourneyError):
    """Trigger predicate failed; the dispatcher treats it as a non-match."""


class ClaimConflictError(JourneyError):
    """Another worker claimed the enrollment first."""


class ClaimLostError(ClaimConflictError):
    """The enrollment's claim expired and was taken over mid-processing."""


class StepEffectError(JourneyError):
    transient = False

    def __init__(self, message: str, *, output=None):
        super().__init__(message)
        self.output = output


class TransientEffectError(StepEffectError):
    """Network/timeout class failure; retried with backoff."""

    transient = True


class PermanentEffectError(StepEffectError):
    """Validation/config class failure; recorded as failed immediately."""

    transient = False


class UnknownOutcomeError(JourneyError):
    """A side effect was in flight when its worker died."""

    def __init__(self, message: str, *, log_entry_id=None, idempotency_key=None):
        super().__init__(message)
        self.log_entry_id = log_entry_id
        self.idempotency_key = idempotency_key
