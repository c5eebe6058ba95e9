"""
In-memory alert repository and in-app notification feed.
"""

import itertools
from collections import deque
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple

from .alerts import Alert
from .errors import NotFound, ValidationError
from .sla import SETTLED_STATUSES
from .types import AlertSeverity, AlertStatus, utcnow

SORT_FIELDS: Dict[str, Callable[[Alert], Any]] = {
    "created_at": lambda a: a.created_at,
    "updated_at": lambda a: a.updated_at,
    "alert_number": lambda a: a.alert_number,
    "severity": lambda a: a.severity.value,
    "status": lambda a: a.status.value,
    "sla_deadline": lambda a: (a.sla_deadline is None, a.sla_deadline or datetime.min),
}

ACTIVE_STATUSES = frozenset({AlertStatus.OPEN, AlertStatus.ACKNOWLEDGED, AlertStatus.IN_PROGRESS})

# Operations queues and the statuses each one shows (None: every alert)
QUEUES: Dict[str, Optional[frozenset]] = {
    "active": ACTIVE_STATUSES,
    "resolved": frozenset({AlertStatus.RESOLVED}),
    "suppressed": frozenset({AlertStatus.SUPPRESSED}),
    "all": None,
}

SEVERITY_RANK = {severity: rank for rank, severity in enumerate(AlertSeverity)}


def _paginate(alerts: List[Alert], page: int, per_page: int) -> Tuple[List[Alert], int]:
    page = max(page, 1)
    if per_page < 1 or per_page > 100:
        per_page = 20
    start = (page - 1) * per_page
    return alerts[start:start + per_page], len(alerts)


def _queue_order(alert: Alert) -> tuple:
    # Most severe first, then nearest SLA deadline, then oldest
    return (
        SEVERITY_RANK[alert.severity],
        alert.sla_deadline is None,
        alert.sla_deadline or alert.created_at,
        alert.created_at,
    )


class AlertStore:
    """
    Per-tenant alert repository.

    Hands out strictly increasing ``alert_number`` values. Alerts are never
    deleted.
    """

    def __init__(self, start_number: int = 1):
        self._alerts: Dict[str, Alert] = {}
        self._numbers = itertools.count(start_number)
        self._lock = Lock()

    def next_number(self) -> int:
        with self._lock:
            return next(self._numbers)

    def add(self, alert: Alert) -> Alert:
        with self._lock:
            self._alerts[alert.id] = alert
        return alert

    def get(self, alert_id: str) -> Alert:
        with self._lock:
            alert = self._alerts.get(alert_id)
        if alert is None:
            raise NotFound("Alert", alert_id)
        return alert

    def all(self) -> List[Alert]:
        with self._lock:
            return list(self._alerts.values())

    def by_status(self, status: AlertStatus) -> Iterator[Alert]:
        return (a for a in self.all() if a.status == status)

    def list(
        self,
        status: Optional[List[str]] = None,
        severity: Optional[List[str]] = None,
        assigned_to: Optional[str] = None,
        control_id: Optional[str] = None,
        test_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        sla_breached: Optional[bool] = None,
        search: Optional[str] = None,
        sort: str = "created_at",
        order: str = "desc",
        page: int = 1,
        per_page: int = 20,
        now: Optional[datetime] = None,
    ) -> Tuple[List[Alert], int]:
        """
        List alerts with filters, sorting and pagination.

        Args:
            status: Statuses to include
            severity: Severities to include
            assigned_to: Assignee id, or "unassigned"
            control_id: Only alerts for this control
            test_id: Only alerts for this test
            rule_id: Only alerts fired by this rule
            sla_breached: Filter on derived SLA breach
            search: Case-insensitive substring of title or description
            sort: One of SORT_FIELDS
            order: "asc" or "desc"
            page: 1-based page number
            per_page: Page size (1-100, otherwise 20)
            now: Reference time for SLA filtering

        Returns:
            Tuple of (page of alerts, total matching)

        Raises:
            ValidationError: On unknown status, severity or sort field
        """
        try:
            statuses = {AlertStatus(s) for s in status} if status else None
            severities = {AlertSeverity(s) for s in severity} if severity else None
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if sort not in SORT_FIELDS:
            raise ValidationError(f"Invalid sort field: {sort}")

        now = now or utcnow()
        needle = search.lower() if search else None

        alerts = []
        for alert in self.all():
            if statuses and alert.status not in statuses:
                continue
            if severities and alert.severity not in severities:
                continue
            if assigned_to == "unassigned":
                if alert.assigned_to is not None:
                    continue
            elif assigned_to and alert.assigned_to != assigned_to:
                continue
            if control_id and alert.control_id != control_id:
                continue
            if test_id and alert.test_id != test_id:
                continue
            if rule_id and alert.alert_rule_id != rule_id:
                continue
            if sla_breached is not None and alert.sla(now).breached != sla_breached:
                continue
            if needle and needle not in alert.title.lower() and needle not in (alert.description or "").lower():
                continue
            alerts.append(alert)

        alerts.sort(key=SORT_FIELDS[sort], reverse=order.lower() != "asc")

        return _paginate(alerts, page, per_page)

    def queue_summary(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Counts for the operations queue view.

        ``sla_breached`` counts only alerts that are not yet resolved or
        closed.
        """
        now = now or utcnow()
        summary = {"active": 0, "resolved": 0, "suppressed": 0, "closed": 0, "sla_breached": 0}
        for alert in self.all():
            if alert.status in ACTIVE_STATUSES:
                summary["active"] += 1
            else:
                summary[alert.status.value] += 1
            if alert.status not in SETTLED_STATUSES and alert.sla(now).breached:
                summary["sla_breached"] += 1
        return summary

    def queue(self, name: str = "active", page: int = 1, per_page: int = 20) -> Tuple[List[Alert], int]:
        """
        One page of an operations queue, most urgent first.

        Raises:
            ValidationError: Unknown queue name
        """
        if name not in QUEUES:
            raise ValidationError(f"Invalid queue: {name}. Expected one of: {', '.join(QUEUES)}")
        statuses = QUEUES[name]
        alerts = [a for a in self.all() if statuses is None or a.status in statuses]
        alerts.sort(key=_queue_order)

        return _paginate(alerts, page, per_page)

    def __len__(self) -> int:
        return len(self._alerts)


class InAppFeed:
    """In-application notification feed, newest last."""

    def __init__(self, max_items: int = 1000):
        self._items: Deque[Dict[str, Any]] = deque(maxlen=max_items)
        self._lock = Lock()

    def publish(self, alert: Alert) -> Dict[str, Any]:
        item = {
            "alert_id": alert.id,
            "alert_number": alert.alert_number,
            "title": alert.title,
            "severity": alert.severity.value,
            "status": alert.status.value,
            "published_at": utcnow().isoformat(),
        }
        with self._lock:
            self._items.append(item)
        return item

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent feed items, newest first."""
        with self._lock:
            return list(itertools.islice(reversed(self._items), limit))

    def __len__(self) -> int:
        return len(self._items)


__all__ = ["AlertStore", "InAppFeed", "SORT_FIELDS", "QUEUES", "ACTIVE_STATUSES"]
