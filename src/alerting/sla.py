"""
SLA clock for alerts.

The clock is a pure function of the deadline, the current time, the alert
status and, for settled alerts, the moment they were resolved or closed.
Nothing here is stored; callers recompute on read.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .types import AlertStatus

SETTLED_STATUSES = frozenset({AlertStatus.RESOLVED, AlertStatus.CLOSED})


@dataclass(frozen=True)
class SLAState:
    """
    Derived SLA view of an alert.

    Attributes:
        deadline: The SLA deadline, or None when the rule had no SLA
        hours_remaining: Hours until the deadline (negative once past it)
        breached: Whether the SLA is (or was, for settled alerts) breached
    """
    deadline: Optional[datetime]
    hours_remaining: Optional[float]
    breached: bool

    def to_dict(self) -> dict:
        return {
            "sla_deadline": self.deadline.isoformat() if self.deadline else None,
            "sla_breached": self.breached,
            "hours_remaining": (
                round(self.hours_remaining, 1)
                if self.hours_remaining is not None else None
            ),
        }


def sla_deadline(created_at: datetime, sla_hours: Optional[int]) -> Optional[datetime]:
    """Deadline for an alert created at ``created_at`` under a rule's SLA."""
    if sla_hours is None:
        return None
    return created_at + timedelta(hours=sla_hours)


def compute_sla(
    deadline: Optional[datetime],
    now: datetime,
    status: AlertStatus,
    settled_at: Optional[datetime] = None,
) -> SLAState:
    """
    Compute hours remaining and breach state.

    Live alerts are measured against ``now``. Once an alert has been resolved
    or closed the clock stops at ``settled_at`` for good, whatever status it
    moves to afterwards; one settled before its deadline is never reported
    breached, one settled after it keeps the breach as history.

    Args:
        deadline: SLA deadline, or None
        now: Current time
        status: Current alert status
        settled_at: When the alert was first resolved or closed

    Returns:
        SLAState
    """
    if deadline is None:
        return SLAState(deadline=None, hours_remaining=None, breached=False)

    if settled_at is not None:
        hours_remaining = (deadline - settled_at).total_seconds() / 3600.0
        return SLAState(deadline=deadline, hours_remaining=hours_remaining, breached=hours_remaining < 0)

    hours_remaining = (deadline - now).total_seconds() / 3600.0
    # A settled status without a timestamp has no stop point to judge by
    breached = hours_remaining < 0 and AlertStatus(status) not in SETTLED_STATUSES

    return SLAState(deadline=deadline, hours_remaining=hours_remaining, breached=breached)


__all__ = ["SLAState", "SETTLED_STATUSES", "sla_deadline", "compute_sla"]
