"""Exceptions raised by the alerting engine."""


class AlertingError(Exception):
    """Base class for all alerting errors."""


class ValidationError(AlertingError):
    """Malformed rule or alert-action input. No state was changed."""


class InvalidTransition(AlertingError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot transition from '{current}' to '{requested}'")


class NotFound(AlertingError):
    """Unknown rule or alert id."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class Conflict(AlertingError):
    """Input collides with existing state (e.g. duplicate rule name)."""


class DeliveryFailure(AlertingError):
    """A single channel's send failed. Recorded, never propagated to matching."""

    def __init__(self, channel: str, reason: str):
        self.channel = channel
        self.reason = reason
        super().__init__(f"{channel}: {reason}")


__all__ = [
    "AlertingError",
    "ValidationError",
    "InvalidTransition",
    "NotFound",
    "Conflict",
    "DeliveryFailure",
]
