"""
shared/utils/errors.py
Engine error taxonomy. Routers map these to HTTP status codes in main.py;
Celery tasks retry only on errors that are not EngineError subclasses.

Uniqueness-constraint conflicts are deliberately absent: they are absorbed
by the insert-or-fetch helpers and reported as "already exists".
"""


class EngineError(Exception):
    """Base class for errors raised by the orchestration engine."""
    retryable = False

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({details})"


class ValidationError(EngineError):
    """Missing recipient contact, malformed coordinates, bad input. Nothing was written."""


class NotFoundError(EngineError):
    """Booking, attribution or professional does not exist."""


class AuthorizationError(EngineError):
    """Signed response link is missing, expired or does not match the request."""


class TransientChannelError(EngineError):
    """Sender timeout or provider 5xx. Recorded as FAILED on the notification row."""
    retryable = True


class StateConflictError(EngineError):
    """Transition not allowed from the attribution's current state."""


class AttributionFinalizedError(StateConflictError):
    """The attribution is already ACCEPTED, EXPIRED or CANCELLED."""

    def __init__(self, attribution_id, status):
        super().__init__(
            "Attribution already finalized",
            attribution_id=attribution_id,
            status=getattr(status, "value", status),
        )
        self.attribution_id = attribution_id
        self.status = status
