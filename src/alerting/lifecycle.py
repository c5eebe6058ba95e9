"""
Alert lifecycle state machine.

The transition table below is the single source of truth for both
validation and the "available actions" query the UI uses.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, List, Optional

import structlog

from .alerts import Alert, StatusChange
from .audit import AuditLog
from .errors import InvalidTransition, ValidationError
from .types import AlertStatus, utcnow

logger = structlog.get_logger(__name__)

_S = AlertStatus

TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    _S.OPEN: frozenset({_S.ACKNOWLEDGED, _S.IN_PROGRESS, _S.RESOLVED, _S.SUPPRESSED, _S.CLOSED}),
    _S.ACKNOWLEDGED: frozenset({_S.IN_PROGRESS, _S.RESOLVED, _S.SUPPRESSED, _S.CLOSED}),
    _S.IN_PROGRESS: frozenset({_S.RESOLVED, _S.SUPPRESSED, _S.CLOSED}),
    _S.RESOLVED: frozenset({_S.SUPPRESSED, _S.CLOSED}),
    _S.SUPPRESSED: frozenset({_S.OPEN, _S.SUPPRESSED, _S.CLOSED}),
    _S.CLOSED: frozenset(),
}

# Statuses reachable through the plain change-status action; the others
# carry required input and have their own operations.
SIMPLE_TARGETS = frozenset({_S.ACKNOWLEDGED, _S.IN_PROGRESS, _S.OPEN})

UNASSIGNABLE = frozenset({_S.CLOSED, _S.RESOLVED})

SYSTEM_ACTOR = "system"


def is_valid_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return AlertStatus(target) in TRANSITIONS[AlertStatus(current)]


def available_transitions(status: AlertStatus) -> List[str]:
    """Statuses reachable from ``status``, in lifecycle order."""
    allowed = TRANSITIONS[AlertStatus(status)]
    return [s.value for s in AlertStatus if s in allowed]


class AlertLifecycle:
    """
    Owns every mutation of an alert's workflow fields.

    Each operation validates its input and the transition before touching
    the alert, so a failed call leaves the alert unchanged.
    """

    def __init__(
        self,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
        max_suppression_days: int = 90,
        min_suppression_reason: int = 20,
        max_suppression_reason: int = 5000,
        max_resolution_notes: int = 10000,
    ):
        self.audit = audit if audit is not None else AuditLog()
        self._clock = clock
        self.max_suppression_days = max_suppression_days
        self.min_suppression_reason = min_suppression_reason
        self.max_suppression_reason = max_suppression_reason
        self.max_resolution_notes = max_resolution_notes

    # -- creation -----------------------------------------------------------

    def open(self, alert: Alert, actor: str = SYSTEM_ACTOR) -> Alert:
        """Record the initial ``open`` state of a freshly fired alert."""
        now = self._clock()
        alert.status = AlertStatus.OPEN
        alert.created_at = alert.updated_at = now
        self._record(alert, "alert.created", actor, AlertStatus.OPEN, now,
                     rule_id=alert.alert_rule_id, severity=alert.severity.value)
        return alert

    # -- status transitions -------------------------------------------------

    def change_status(self, alert: Alert, status: str, actor: str) -> Alert:
        """
        Move an alert to acknowledged, in_progress or (from suppressed) open.

        Raises:
            ValidationError: Unknown status, or one that needs its own action
            InvalidTransition: Not allowed from the current status
        """
        try:
            target = AlertStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid status: {status}")
        if target not in SIMPLE_TARGETS:
            raise ValidationError(
                f"Status '{target.value}' requires its own action (resolve, suppress or close)"
            )
        self._check(alert, target)

        now = self._clock()
        previous = alert.status
        if previous == AlertStatus.SUPPRESSED and target == AlertStatus.OPEN:
            alert.suppressed_until = None
            alert.suppression_reason = None
        alert.status = target
        alert.updated_at = now
        self._record(alert, "alert.status_changed", actor, previous, now)
        return alert

    def acknowledge(self, alert: Alert, actor: str) -> Alert:
        return self.change_status(alert, AlertStatus.ACKNOWLEDGED.value, actor)

    def start_progress(self, alert: Alert, actor: str) -> Alert:
        return self.change_status(alert, AlertStatus.IN_PROGRESS.value, actor)

    def resolve(self, alert: Alert, notes: str, actor: str) -> Alert:
        """
        Resolve an alert.

        Raises:
            ValidationError: Empty or oversized resolution notes
            InvalidTransition: Alert is not open, acknowledged or in progress
        """
        notes = (notes or "").strip()
        if not notes:
            raise ValidationError("resolution_notes is required")
        if len(notes) > self.max_resolution_notes:
            raise ValidationError(
                f"resolution_notes must be {self.max_resolution_notes} characters or less"
            )
        self._check(alert, AlertStatus.RESOLVED)

        now = self._clock()
        previous = alert.status
        alert.status = AlertStatus.RESOLVED
        alert.resolution_notes = notes
        alert.resolved_by = actor
        alert.resolved_at = now
        alert.updated_at = now
        self._record(alert, "alert.resolved", actor, previous, now, note=notes)
        return alert

    def suppress(self, alert: Alert, until: datetime, reason: str, actor: str) -> Alert:
        """
        Suppress (snooze) an alert until a point in time.

        Raises:
            ValidationError: Reason too short/long, or ``until`` not within
                the next ``max_suppression_days``
            InvalidTransition: Alert is closed
        """
        reason = (reason or "").strip()
        if len(reason) < self.min_suppression_reason:
            raise ValidationError(
                f"suppression_reason must be at least {self.min_suppression_reason} characters"
            )
        if len(reason) > self.max_suppression_reason:
            raise ValidationError(
                f"suppression_reason must be {self.max_suppression_reason} characters or less"
            )
        now = self._clock()
        if until is None:
            raise ValidationError("suppressed_until is required")
        if until.tzinfo is None:
            raise ValidationError("suppressed_until must include a timezone")
        if until <= now:
            raise ValidationError("suppressed_until must be in the future")
        if until > now + timedelta(days=self.max_suppression_days):
            raise ValidationError(
                f"suppressed_until must be within {self.max_suppression_days} days"
            )
        self._check(alert, AlertStatus.SUPPRESSED)

        previous = alert.status
        alert.status = AlertStatus.SUPPRESSED
        alert.suppressed_until = until
        alert.suppression_reason = reason
        alert.updated_at = now
        self._record(alert, "alert.suppressed", actor, previous, now,
                     note=reason, until=until.isoformat())
        return alert

    def release_if_expired(self, alert: Alert, now: Optional[datetime] = None) -> bool:
        """
        Reopen a suppressed alert whose window has passed.

        Returns:
            True if the alert was reopened
        """
        now = now or self._clock()
        if alert.status != AlertStatus.SUPPRESSED:
            return False
        if alert.suppressed_until is not None and now < alert.suppressed_until:
            return False

        alert.status = AlertStatus.OPEN
        alert.suppressed_until = None
        alert.suppression_reason = None
        alert.updated_at = now
        self._record(alert, "alert.unsuppressed", SYSTEM_ACTOR, AlertStatus.SUPPRESSED, now)
        return True

    def close(self, alert: Alert, actor: str, notes: Optional[str] = None) -> Alert:
        """
        Close an alert. Closed is terminal.

        Raises:
            ValidationError: Oversized notes
            InvalidTransition: Alert is already closed
        """
        notes = notes.strip() if notes else None
        if notes and len(notes) > self.max_resolution_notes:
            raise ValidationError(
                f"resolution_notes must be {self.max_resolution_notes} characters or less"
            )
        self._check(alert, AlertStatus.CLOSED)

        now = self._clock()
        previous = alert.status
        alert.status = AlertStatus.CLOSED
        alert.closed_by = actor
        alert.closed_at = now
        if notes:
            alert.resolution_notes = notes
        alert.updated_at = now
        self._record(alert, "alert.closed", actor, previous, now, note=notes)
        return alert

    # -- orthogonal operations ---------------------------------------------

    def assign(self, alert: Alert, assignee: str, actor: str) -> Alert:
        """
        Assign an alert. Does not change its status.

        Raises:
            ValidationError: Empty assignee, or alert is resolved/closed
        """
        assignee = (assignee or "").strip()
        if not assignee:
            raise ValidationError("assigned_to is required")
        if alert.status in UNASSIGNABLE:
            raise ValidationError(f"Cannot assign alert in '{alert.status.value}' status")

        now = self._clock()
        alert.assigned_to = assignee
        alert.assigned_by = actor
        alert.assigned_at = now
        alert.updated_at = now
        self._record(alert, "alert.assigned", actor, alert.status, now, assigned_to=assignee)
        return alert

    def record_sla_breach(self, alert: Alert, now: Optional[datetime] = None) -> bool:
        """
        Latch the first observation of a live alert past its SLA deadline.

        Returns:
            True if the breach was newly recorded
        """
        now = now or self._clock()
        if alert.sla_breach_recorded_at is not None:
            return False
        if alert.status == AlertStatus.SUPPRESSED or not alert.sla(now).breached:
            return False
        alert.sla_breach_recorded_at = now
        self._record(alert, "alert.sla_breached", SYSTEM_ACTOR, alert.status, now,
                     sla_deadline=alert.sla_deadline.isoformat())
        return True

    def record_redelivery(self, alert: Alert, actor: str, channels: List[str]) -> None:
        """Audit a manual redelivery. The alert's status is untouched."""
        self._record(alert, "alert.redelivered", actor, alert.status, self._clock(),
                     channels=channels)

    # -- helpers ------------------------------------------------------------

    def _check(self, alert: Alert, target: AlertStatus) -> None:
        if not is_valid_transition(alert.status, target):
            raise InvalidTransition(alert.status.value, target.value)

    def _record(
        self,
        alert: Alert,
        action: str,
        actor: str,
        previous: AlertStatus,
        at: datetime,
        note: Optional[str] = None,
        **details,
    ) -> None:
        alert.history.append(StatusChange(
            action=action,
            actor=actor,
            at=at,
            from_status=previous,
            to_status=alert.status,
            note=note,
        ))
        self.audit.record(
            action,
            actor,
            "alert",
            alert.id,
            tenant_id=alert.tenant_id,
            timestamp=at,
            alert_number=alert.alert_number,
            old_status=previous.value,
            new_status=alert.status.value,
            note=note,
            **details,
        )
        logger.info(
            action,
            alert_id=alert.id,
            alert_number=alert.alert_number,
            actor=actor,
            old_status=previous.value,
            new_status=alert.status.value,
        )


__all__ = [
    "TRANSITIONS",
    "SIMPLE_TARGETS",
    "SYSTEM_ACTOR",
    "is_valid_transition",
    "available_transitions",
    "AlertLifecycle",
]
