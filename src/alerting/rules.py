"""
Alert rules and the rule store.

Rules define the conditions under which a test result fires an alert and
how the resulting alert is shaped and delivered.
"""

from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

import structlog

from .channels import ChannelConfig, build_channel_configs
from .errors import Conflict, NotFound, ValidationError
from .types import (
    AlertSeverity,
    DeliveryChannel,
    ResultStatus,
    TestResult,
    TestSeverity,
    utcnow,
)

audit_logger = structlog.get_logger(__name__)

MAX_NAME_LENGTH = 255
DEFAULT_PRIORITY = 100

# Fields accepted by RuleStore.create / RuleStore.update
RULE_FIELDS = frozenset({
    "name",
    "description",
    "enabled",
    "priority",
    "match_severities",
    "match_result_statuses",
    "match_test_types",
    "match_control_ids",
    "match_tags",
    "consecutive_failures",
    "cooldown_minutes",
    "alert_severity",
    "alert_title_template",
    "auto_assign_to",
    "sla_hours",
    "delivery_channels",
    "slack_webhook_url",
    "email_recipients",
    "webhook_url",
    "webhook_headers",
})

_CHANNEL_FIELDS = ("slack_webhook_url", "email_recipients", "webhook_url", "webhook_headers")


@dataclass
class AlertRule:
    """
    A firing policy evaluated against every completed test result.

    Attributes:
        name: Unique (per tenant) rule name
        alert_severity: Severity given to alerts this rule fires
        delivery_channels: Ordered channels alerts are dispatched to
        channel_configs: Per-channel configuration variants
        priority: Evaluation order, lower first
        match_severities: Test severities matched (empty matches any)
        match_result_statuses: Result statuses matched
        consecutive_failures: Matching results in a row needed to fire
        cooldown_minutes: Minimum spacing between two fires for one test
        sla_hours: Hours until an alert's SLA deadline, if any
        alerts_generated: Number of alerts this rule has fired
    """
    name: str
    alert_severity: AlertSeverity
    delivery_channels: List[DeliveryChannel]
    channel_configs: Dict[DeliveryChannel, ChannelConfig] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    description: Optional[str] = None
    enabled: bool = True
    deprecated: bool = False
    priority: int = DEFAULT_PRIORITY
    match_severities: frozenset = frozenset()
    match_result_statuses: frozenset = frozenset({ResultStatus.FAIL})
    match_test_types: frozenset = frozenset()
    match_control_ids: frozenset = frozenset()
    match_tags: frozenset = frozenset()
    consecutive_failures: int = 1
    cooldown_minutes: int = 0
    alert_title_template: Optional[str] = None
    auto_assign_to: Optional[str] = None
    sla_hours: Optional[int] = None
    alerts_generated: int = 0
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.priority, self.id)

    def matches(self, result: TestResult) -> bool:
        """
        Evaluate the match predicate against a test result.

        Empty filter sets match anything; the status set is always applied.
        """
        if self.match_severities and result.severity not in self.match_severities:
            return False
        if result.status not in self.match_result_statuses:
            return False
        if self.match_test_types and result.test_type not in self.match_test_types:
            return False
        if self.match_control_ids and result.control_id not in self.match_control_ids:
            return False
        if self.match_tags and not self.match_tags.intersection(result.tags):
            return False
        return True

    def render_title(self, result: TestResult) -> str:
        """Render the alert title for a result that fired this rule."""
        title = result.test_title or result.test_id
        identifier = result.test_identifier or result.test_id
        if not self.alert_title_template:
            return f"{title} failed on {identifier}"
        return (
            self.alert_title_template
            .replace("{{test.title}}", title)
            .replace("{{test.identifier}}", identifier)
            .replace("{{severity}}", result.severity.value)
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the rule using flat wire field names."""
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "deprecated": self.deprecated,
            "priority": self.priority,
            "match_severities": sorted(s.value for s in self.match_severities),
            "match_result_statuses": sorted(s.value for s in self.match_result_statuses),
            "match_test_types": sorted(self.match_test_types),
            "match_control_ids": sorted(self.match_control_ids),
            "match_tags": sorted(self.match_tags),
            "consecutive_failures": self.consecutive_failures,
            "cooldown_minutes": self.cooldown_minutes,
            "alert_severity": self.alert_severity.value,
            "alert_title_template": self.alert_title_template,
            "auto_assign_to": self.auto_assign_to,
            "sla_hours": self.sla_hours,
            "delivery_channels": [ch.value for ch in self.delivery_channels],
            "slack_webhook_url": None,
            "email_recipients": [],
            "webhook_url": None,
            "webhook_headers": {},
            "alerts_generated": self.alerts_generated,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        for config in self.channel_configs.values():
            data.update(config.to_dict())
        return data


def _enum_set(enum_cls, values: Optional[Iterable[Any]], field_name: str) -> frozenset:
    try:
        return frozenset(enum_cls(v) for v in (values or ()))
    except ValueError as e:
        raise ValidationError(f"Invalid {field_name}: {e}") from e


def _channel_list(values: Optional[Iterable[Any]]) -> List[DeliveryChannel]:
    channels: List[DeliveryChannel] = []
    for value in values or ():
        try:
            channel = DeliveryChannel(value)
        except ValueError:
            raise ValidationError(f"Invalid delivery channel: {value}")
        if channel not in channels:
            channels.append(channel)
    if not channels:
        raise ValidationError("At least one delivery channel is required")
    return channels


def _apply_fields(rule: AlertRule, fields: Dict[str, Any]) -> None:
    """Validate ``fields`` and write them onto ``rule``. Raises before any write."""
    unknown = set(fields) - RULE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown rule fields: {', '.join(sorted(unknown))}")

    staged: Dict[str, Any] = {}

    if "name" in fields:
        name = (fields["name"] or "").strip()
        if not name:
            raise ValidationError("name is required")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError("Name must be 255 characters or less")
        staged["name"] = name
    if "description" in fields:
        staged["description"] = fields["description"]
    if "enabled" in fields:
        if fields["enabled"] and rule.deprecated:
            raise ValidationError("Deprecated rules cannot be re-enabled")
        staged["enabled"] = bool(fields["enabled"])
    if "priority" in fields and fields["priority"] is not None:
        staged["priority"] = int(fields["priority"])

    if "match_severities" in fields:
        staged["match_severities"] = _enum_set(
            TestSeverity, fields["match_severities"], "match_severities"
        )
    if "match_result_statuses" in fields:
        statuses = _enum_set(ResultStatus, fields["match_result_statuses"], "match_result_statuses")
        staged["match_result_statuses"] = statuses or frozenset({ResultStatus.FAIL})
    for name in ("match_test_types", "match_control_ids", "match_tags"):
        if name in fields:
            staged[name] = frozenset(fields[name] or ())

    if "consecutive_failures" in fields and fields["consecutive_failures"] is not None:
        value = int(fields["consecutive_failures"])
        if value < 1:
            raise ValidationError("consecutive_failures must be at least 1")
        staged["consecutive_failures"] = value
    if "cooldown_minutes" in fields and fields["cooldown_minutes"] is not None:
        value = int(fields["cooldown_minutes"])
        if value < 0:
            raise ValidationError("cooldown_minutes must not be negative")
        staged["cooldown_minutes"] = value
    if "alert_severity" in fields:
        try:
            staged["alert_severity"] = AlertSeverity(fields["alert_severity"])
        except ValueError:
            raise ValidationError("Invalid alert_severity")
    if "alert_title_template" in fields:
        staged["alert_title_template"] = fields["alert_title_template"] or None
    if "auto_assign_to" in fields:
        staged["auto_assign_to"] = fields["auto_assign_to"] or None
    if "sla_hours" in fields:
        sla_hours = fields["sla_hours"]
        if sla_hours is not None:
            sla_hours = int(sla_hours)
            if sla_hours < 1:
                raise ValidationError("sla_hours must be at least 1")
        staged["sla_hours"] = sla_hours
    if "delivery_channels" in fields:
        staged["delivery_channels"] = _channel_list(fields["delivery_channels"])

    if any(name in fields for name in _CHANNEL_FIELDS):
        current = rule.to_dict()
        merged = {name: fields.get(name, current[name]) for name in _CHANNEL_FIELDS}
        staged["channel_configs"] = build_channel_configs(**merged)

    for name, value in staged.items():
        setattr(rule, name, value)


class RuleStore:
    """
    Per-tenant store of alert rules.

    Rules that have fired are never hard-deleted; deleting them marks them
    deprecated and disabled so alert-to-rule provenance stays resolvable.
    """

    def __init__(self, clock=utcnow):
        self._rules: Dict[str, AlertRule] = {}
        self._lock = Lock()
        self._clock = clock

    def create(self, actor: Optional[str] = None, **fields: Any) -> AlertRule:
        """
        Create a rule.

        Raises:
            ValidationError: If fields are missing or malformed
            Conflict: If the name is already used by this tenant
        """
        for required in ("name", "alert_severity", "delivery_channels"):
            if required not in fields:
                raise ValidationError("name, alert_severity, and delivery_channels are required")

        now = self._clock()
        rule = AlertRule(
            name="",
            alert_severity=AlertSeverity.MEDIUM,
            delivery_channels=[],
            created_by=actor,
            created_at=now,
            updated_at=now,
        )
        fields = dict(fields)
        for name in _CHANNEL_FIELDS:
            fields.setdefault(name, None)
        _apply_fields(rule, fields)

        with self._lock:
            self._check_unique_name(rule.name)
            self._rules[rule.id] = rule

        audit_logger.info("alert_rule.created", rule_id=rule.id, name=rule.name, actor=actor)
        return rule

    def update(self, rule_id: str, actor: Optional[str] = None, **fields: Any) -> AlertRule:
        """Apply a partial update. Nothing changes if validation fails."""
        with self._lock:
            rule = self._get(rule_id)
            if "name" in fields and fields["name"] != rule.name:
                self._check_unique_name((fields["name"] or "").strip(), exclude=rule_id)
            _apply_fields(rule, fields)
            rule.updated_at = self._clock()

        audit_logger.info(
            "alert_rule.updated", rule_id=rule_id, fields=sorted(fields), actor=actor
        )
        return rule

    def set_enabled(self, rule_id: str, enabled: bool, actor: Optional[str] = None) -> AlertRule:
        with self._lock:
            rule = self._get(rule_id)
            if enabled and rule.deprecated:
                raise ValidationError("Deprecated rules cannot be re-enabled")
            rule.enabled = enabled
            rule.updated_at = self._clock()
        audit_logger.info(
            "alert_rule.enabled" if enabled else "alert_rule.disabled",
            rule_id=rule_id,
            actor=actor,
        )
        return rule

    def delete(self, rule_id: str, actor: Optional[str] = None) -> bool:
        """
        Delete a rule, or deprecate it if it has produced alerts.

        Returns:
            True if hard-deleted, False if deprecated
        """
        with self._lock:
            rule = self._get(rule_id)
            if rule.alerts_generated > 0:
                rule.deprecated = True
                rule.enabled = False
                rule.updated_at = self._clock()
                hard_deleted = False
            else:
                del self._rules[rule_id]
                hard_deleted = True

        audit_logger.info(
            "alert_rule.deleted", rule_id=rule_id, hard_deleted=hard_deleted, actor=actor
        )
        return hard_deleted

    def get(self, rule_id: str) -> AlertRule:
        with self._lock:
            return self._get(rule_id)

    def list(
        self,
        enabled: Optional[bool] = None,
        include_deprecated: bool = False,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[AlertRule], int]:
        """
        List rules sorted by priority.

        Returns:
            Tuple of (page of rules, total matching)
        """
        with self._lock:
            rules = sorted(self._rules.values(), key=lambda r: r.sort_key)
        if not include_deprecated:
            rules = [r for r in rules if not r.deprecated]
        if enabled is not None:
            rules = [r for r in rules if r.enabled == enabled]
        page = max(page, 1)
        start = (page - 1) * per_page
        return rules[start:start + per_page], len(rules)

    def enabled_rules(self) -> List[AlertRule]:
        """Rules eligible for matching, in evaluation order."""
        with self._lock:
            rules = [r for r in self._rules.values() if r.enabled and not r.deprecated]
        return sorted(rules, key=lambda r: r.sort_key)

    def record_fire(self, rule_id: str) -> None:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is not None:
                rule.alerts_generated += 1

    def _get(self, rule_id: str) -> AlertRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise NotFound("Alert rule", rule_id)
        return rule

    def _check_unique_name(self, name: str, exclude: Optional[str] = None) -> None:
        for rule in self._rules.values():
            if rule.id != exclude and rule.name == name:
                raise Conflict("Alert rule name already exists in this organization")

    def __len__(self) -> int:
        return len(self._rules)


__all__ = ["AlertRule", "RuleStore", "RULE_FIELDS", "DEFAULT_PRIORITY"]
