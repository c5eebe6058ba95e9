"""
Shared enumerations and the incoming test result record.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class AlertSeverity(str, Enum):
    """Severity assigned to a fired alert."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TestSeverity(str, Enum):
    """Severity of the compliance test that produced a result."""
    __test__ = False

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFORMATIONAL = "informational"


class ResultStatus(str, Enum):
    """Outcome of a single test execution."""
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    WARNING = "warning"
    SKIP = "skip"


class AlertStatus(str, Enum):
    """Lifecycle states of an alert."""
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"
    CLOSED = "closed"


class DeliveryChannel(str, Enum):
    """Notification media an alert can be dispatched to."""
    SLACK = "slack"
    EMAIL = "email"
    WEBHOOK = "webhook"
    IN_APP = "in_app"


@dataclass
class TestResult:
    """
    A completed test execution handed over by the test pipeline.

    Attributes:
        test_id: ID of the test that ran
        control_id: ID of the control the test verifies
        status: Result status (pass, fail, error, ...)
        severity: Severity of the test itself
        message: Human-readable result message
        details: Structured result payload
        tested_at: When the test ran
        result_id: ID of the stored result row, if any
        test_identifier: Short human identifier of the test (e.g. "TST-AC-001")
        test_title: Human title of the test
        test_type: Kind of test (configuration, access_control, ...)
        tags: Free-form tags carried by the test
    """
    __test__ = False

    test_id: str
    control_id: str
    status: ResultStatus
    severity: TestSeverity
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    tested_at: datetime = field(default_factory=utcnow)
    result_id: Optional[str] = None
    test_identifier: str = ""
    test_title: str = ""
    test_type: str = ""
    tags: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.status = ResultStatus(self.status)
        self.severity = TestSeverity(self.severity)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestResult":
        """Build a result from a pipeline payload."""
        tested_at = data.get("tested_at")
        if isinstance(tested_at, str):
            tested_at = datetime.fromisoformat(tested_at)
        return cls(
            test_id=data["test_id"],
            control_id=data["control_id"],
            status=data["status"],
            severity=data["severity"],
            message=data.get("message", ""),
            details=data.get("details") or {},
            tested_at=tested_at or utcnow(),
            result_id=data.get("result_id"),
            test_identifier=data.get("test_identifier", ""),
            test_title=data.get("test_title", ""),
            test_type=data.get("test_type", ""),
            tags=list(data.get("tags") or []),
        )


__all__ = [
    "utcnow",
    "AlertSeverity",
    "TestSeverity",
    "ResultStatus",
    "AlertStatus",
    "DeliveryChannel",
    "TestResult",
]
