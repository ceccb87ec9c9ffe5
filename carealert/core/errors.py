"""Error taxonomy raised by core operations.

GatewayError lives with the SMS port and PersistenceError with the stores.
"""


class CareAlertError(Exception):
    """Base class for errors surfaced to callers of the core operations."""


class ValidationError(CareAlertError):
    """Malformed or missing input. The message is safe to show verbatim."""


class ForbiddenError(CareAlertError):
    """The acting user is not allowed to touch this record."""


class NotFoundError(CareAlertError):
    """Unknown reminder, alert, user or caregiver id."""
