"""Error taxonomy shared by repositories, services and the HTTP layer."""


class EngineError(Exception):
    """Base class for every error raised by the calendar engine."""


class RuleValidationError(EngineError, ValueError):
    """Malformed recurrence rule, time slot or entity shape."""


class NotFoundError(EngineError, LookupError):
    """The source entity or event no longer exists.

    Callers generally treat this as "already resolved" rather than fatal.
    """


class StoreError(EngineError):
    """Transient failure talking to the backing store.

    Safe to retry for generation/regeneration (idempotent). Status
    transitions are only retried through their own idempotency check.
    """


class InvalidTransitionError(EngineError, ValueError):
    """The event is not in a state that allows the requested transition."""
