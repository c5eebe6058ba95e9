"""
Core alert data structures for the alerting system.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .channels import ChannelConfig
from .sla import SLAState, compute_sla
from .types import (
    AlertSeverity,
    AlertStatus,
    DeliveryChannel,
    ResultStatus,
    TestResult,
    utcnow,
)


@dataclass(frozen=True)
class TestResultSnapshot:
    """
    Immutable copy of the result that fired an alert.

    Later changes to the live test result never reach this snapshot.
    """
    __test__ = False

    result_id: Optional[str]
    status: ResultStatus
    message: str
    details: Dict[str, Any]
    tested_at: datetime

    @classmethod
    def capture(cls, result: TestResult) -> "TestResultSnapshot":
        return cls(
            result_id=result.result_id,
            status=result.status,
            message=result.message,
            details=copy.deepcopy(result.details),
            tested_at=result.tested_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result_id": self.result_id,
            "status": self.status.value,
            "message": self.message,
            "details": copy.deepcopy(self.details),
            "tested_at": self.tested_at.isoformat(),
        }


@dataclass(frozen=True)
class StatusChange:
    """One recorded action on an alert."""
    action: str
    actor: str
    at: datetime
    from_status: AlertStatus
    to_status: AlertStatus
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "actor": self.actor,
            "at": self.at.isoformat(),
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "note": self.note,
        }


@dataclass(frozen=True)
class DeliveryAttempt:
    """Outcome of sending one alert to one channel."""
    alert_id: Optional[str]
    channel: DeliveryChannel
    attempted_at: datetime
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "channel": self.channel.value,
            "attempted_at": self.attempted_at.isoformat(),
            "success": self.success,
            "error": self.error,
        }


@dataclass
class Alert:
    """
    One firing of an alert rule against one test.

    Attributes:
        alert_number: Sequential per-tenant number for human reference
        title: Rendered alert title
        severity: Copied from the rule's alert_severity
        alert_rule_id: Rule that fired
        test_id: Test that triggered the rule
        control_id: Control the test verifies
        snapshot: Immutable copy of the triggering result
        delivery_channels: Channels copied from the rule at fire time
        channel_configs: Channel configuration copied from the rule at fire time
        delivered_at: Channel -> time of the last successful delivery
    """
    alert_number: int
    title: str
    severity: AlertSeverity
    alert_rule_id: str
    test_id: str
    control_id: str
    snapshot: TestResultSnapshot
    delivery_channels: List[DeliveryChannel]
    id: str = field(default_factory=lambda: str(uuid4()))
    description: Optional[str] = None
    status: AlertStatus = AlertStatus.OPEN
    tenant_id: str = "default"
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    closed_at: Optional[datetime] = None
    suppression_reason: Optional[str] = None
    suppressed_until: Optional[datetime] = None
    sla_deadline: Optional[datetime] = None
    sla_breach_recorded_at: Optional[datetime] = None
    channel_configs: Dict[DeliveryChannel, ChannelConfig] = field(default_factory=dict, repr=False)
    delivered_at: Dict[DeliveryChannel, datetime] = field(default_factory=dict)
    delivery_attempts: List[DeliveryAttempt] = field(default_factory=list)
    history: List[StatusChange] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def settled_at(self) -> Optional[datetime]:
        """
        When the alert was first resolved or closed, if ever.

        Later transitions (closing a resolved alert, suppressing it) do not
        move this point.
        """
        return self.resolved_at or self.closed_at

    def sla(self, now: Optional[datetime] = None) -> SLAState:
        """Derived SLA state as of ``now``."""
        return compute_sla(
            self.sla_deadline,
            now or utcnow(),
            self.status,
            settled_at=self.settled_at,
        )

    def undelivered_channels(self) -> List[DeliveryChannel]:
        return [ch for ch in self.delivery_channels if ch not in self.delivered_at]

    def to_dict(self, now: Optional[datetime] = None, include_history: bool = True) -> Dict[str, Any]:
        """Serialize the alert, including derived SLA fields."""

        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        data = {
            "id": self.id,
            "alert_number": self.alert_number,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "status": self.status.value,
            "alert_rule_id": self.alert_rule_id,
            "test_id": self.test_id,
            "control_id": self.control_id,
            "test_result": self.snapshot.to_dict(),
            "assigned_to": self.assigned_to,
            "assigned_by": self.assigned_by,
            "assigned_at": _iso(self.assigned_at),
            "resolution_notes": self.resolution_notes,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "closed_by": self.closed_by,
            "closed_at": _iso(self.closed_at),
            "suppression_reason": self.suppression_reason,
            "suppressed_until": _iso(self.suppressed_until),
            "sla_breach_recorded_at": _iso(self.sla_breach_recorded_at),
            "delivery_channels": [ch.value for ch in self.delivery_channels],
            "delivered_at": {ch.value: ts.isoformat() for ch, ts in self.delivered_at.items()},
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        data.update(self.sla(now).to_dict())
        if include_history:
            data["history"] = [change.to_dict() for change in self.history]
            data["delivery_attempts"] = [a.to_dict() for a in self.delivery_attempts]
        return data


__all__ = [
    "TestResultSnapshot",
    "StatusChange",
    "DeliveryAttempt",
    "Alert",
]
