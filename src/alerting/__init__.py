"""
Compliance alerting.

This package turns compliance test results into alerts through
configurable rules, drives each alert through its workflow, and delivers
it to Slack, email, webhooks and the in-app feed.
"""

from .types import (
    AlertSeverity,
    AlertStatus,
    DeliveryChannel,
    ResultStatus,
    TestResult,
    TestSeverity,
)
from .errors import (
    AlertingError,
    Conflict,
    DeliveryFailure,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .alerts import Alert, DeliveryAttempt, StatusChange, TestResultSnapshot
from .rules import AlertRule, RuleStore
from .trackers import ConsecutiveFailureTracker, CooldownTracker
from .sla import SLAState, compute_sla
from .lifecycle import TRANSITIONS, AlertLifecycle, available_transitions
from .notifiers import (
    BaseNotifier,
    EmailNotifier,
    InAppNotifier,
    SlackNotifier,
    SMTPTransport,
    WebhookNotifier,
)
from .delivery import DeliveryDispatcher
from .engine import RuleMatchingEngine
from .audit import AuditLog
from .service import AlertingService, TenantRegistry
from .maintenance import MaintenanceLoop

__all__ = [
    # Core types
    "AlertSeverity",
    "AlertStatus",
    "DeliveryChannel",
    "ResultStatus",
    "TestResult",
    "TestSeverity",
    # Errors
    "AlertingError",
    "Conflict",
    "DeliveryFailure",
    "InvalidTransition",
    "NotFound",
    "ValidationError",
    # Alerts and rules
    "Alert",
    "DeliveryAttempt",
    "StatusChange",
    "TestResultSnapshot",
    "AlertRule",
    "RuleStore",
    # Engine state
    "ConsecutiveFailureTracker",
    "CooldownTracker",
    "SLAState",
    "compute_sla",
    "TRANSITIONS",
    "AlertLifecycle",
    "available_transitions",
    # Notifiers
    "BaseNotifier",
    "EmailNotifier",
    "InAppNotifier",
    "SlackNotifier",
    "SMTPTransport",
    "WebhookNotifier",
    # Coordination
    "DeliveryDispatcher",
    "RuleMatchingEngine",
    "AuditLog",
    "AlertingService",
    "TenantRegistry",
    "MaintenanceLoop",
]
