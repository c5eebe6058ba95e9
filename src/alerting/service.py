"""
Alerting service: the per-tenant facade over rules, matching, lifecycle and
delivery, plus the registry that hands out one service per tenant.
"""

import asyncio
import logging
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .alerts import Alert, DeliveryAttempt
from .audit import AuditLog
from .channels import config_from_request
from .delivery import DeliveryDispatcher
from .engine import RuleMatchingEngine
from .errors import ValidationError
from .lifecycle import UNASSIGNABLE, AlertLifecycle, available_transitions
from .notifiers import (
    EmailNotifier,
    InAppNotifier,
    SlackNotifier,
    SMTPTransport,
    WebhookNotifier,
)
from .rules import AlertRule, RuleStore
from .store import AlertStore
from .trackers import ConsecutiveFailureTracker, CooldownTracker
from .types import AlertStatus, DeliveryChannel, TestResult, utcnow

logger = logging.getLogger(__name__)


class AlertingService:
    """
    All alerting operations for one tenant.

    Results are processed one at a time per tenant; different tenants never
    share rules, trackers or alerts.
    """

    def __init__(
        self,
        tenant_id: str = "default",
        dispatcher: Optional[DeliveryDispatcher] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
        **lifecycle_options: Any,
    ):
        """
        Initialize the service.

        Args:
            tenant_id: Tenant this service belongs to
            dispatcher: Shared delivery dispatcher
            audit: Shared audit log
            clock: Time source
            **lifecycle_options: Limits passed to AlertLifecycle
        """
        self.tenant_id = tenant_id
        self._clock = clock
        self.audit = audit if audit is not None else AuditLog()
        self.dispatcher = dispatcher if dispatcher is not None else DeliveryDispatcher(clock=clock)
        self.rules = RuleStore(clock=clock)
        self.alerts = AlertStore()
        self.lifecycle = AlertLifecycle(audit=self.audit, clock=clock, **lifecycle_options)
        self.engine = RuleMatchingEngine(
            rules=self.rules,
            alerts=self.alerts,
            lifecycle=self.lifecycle,
            dispatcher=self.dispatcher,
            streaks=ConsecutiveFailureTracker(),
            cooldowns=CooldownTracker(),
            tenant_id=tenant_id,
            clock=clock,
        )
        self._process_lock = asyncio.Lock()

    # -- rules --------------------------------------------------------------

    def create_rule(self, actor: str, **fields: Any) -> AlertRule:
        rule = self.rules.create(actor=actor, **fields)
        self._audit_rule("alert_rule.created", actor, rule, name=rule.name)
        return rule

    def update_rule(self, rule_id: str, actor: str, **fields: Any) -> AlertRule:
        rule = self.rules.update(rule_id, actor=actor, **fields)
        self._audit_rule("alert_rule.updated", actor, rule, fields=sorted(fields))
        return rule

    def enable_rule(self, rule_id: str, actor: str) -> AlertRule:
        rule = self.rules.set_enabled(rule_id, True, actor=actor)
        self._audit_rule("alert_rule.enabled", actor, rule)
        return rule

    def disable_rule(self, rule_id: str, actor: str) -> AlertRule:
        rule = self.rules.set_enabled(rule_id, False, actor=actor)
        self._audit_rule("alert_rule.disabled", actor, rule)
        return rule

    def delete_rule(self, rule_id: str, actor: str) -> bool:
        """
        Delete a rule, deprecating it instead if it has fired alerts.

        Returns:
            True if the rule was removed, False if it was deprecated
        """
        hard_deleted = self.rules.delete(rule_id, actor=actor)
        self.audit.record(
            "alert_rule.deleted" if hard_deleted else "alert_rule.deprecated",
            actor, "alert_rule", rule_id,
            tenant_id=self.tenant_id, timestamp=self._clock(),
        )
        return hard_deleted

    def get_rule(self, rule_id: str) -> AlertRule:
        return self.rules.get(rule_id)

    def list_rules(
        self,
        enabled: Optional[bool] = None,
        include_deprecated: bool = False,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[AlertRule], int]:
        return self.rules.list(
            enabled=enabled,
            include_deprecated=include_deprecated,
            page=page,
            per_page=per_page,
        )

    # -- ingest -------------------------------------------------------------

    async def process_result(self, result: TestResult) -> List[Alert]:
        """
        Run a completed test result through the matching engine.

        Returns once the alerts exist; their delivery continues in the
        background.
        """
        async with self._process_lock:
            return self.engine.process_result(result)

    # -- alerts -------------------------------------------------------------

    def get_alert(self, alert_id: str) -> Alert:
        return self.alerts.get(alert_id)

    def list_alerts(self, **filters: Any) -> Tuple[List[Alert], int]:
        filters.setdefault("now", self._clock())
        return self.alerts.list(**filters)

    def queue_summary(self, now: Optional[datetime] = None) -> Dict[str, int]:
        return self.alerts.queue_summary(now or self._clock())

    def alert_queue(self, queue: str = "active", page: int = 1, per_page: int = 20) -> Tuple[List[Alert], int]:
        """One page of an operations queue (active, resolved, suppressed or all)."""
        return self.alerts.queue(queue, page=page, per_page=per_page)

    def available_actions(self, alert_id: str) -> Dict[str, Any]:
        """Transitions and orthogonal actions currently allowed on an alert."""
        alert = self.alerts.get(alert_id)
        return {
            "status": alert.status.value,
            "transitions": available_transitions(alert.status),
            "can_assign": alert.status not in UNASSIGNABLE,
            "can_redeliver": True,
        }

    def change_status(self, alert_id: str, status: str, actor: str) -> Alert:
        return self.lifecycle.change_status(self.alerts.get(alert_id), status, actor)

    def resolve(self, alert_id: str, notes: str, actor: str) -> Alert:
        return self.lifecycle.resolve(self.alerts.get(alert_id), notes, actor)

    def suppress(self, alert_id: str, until: datetime, reason: str, actor: str) -> Alert:
        return self.lifecycle.suppress(self.alerts.get(alert_id), until, reason, actor)

    def assign(self, alert_id: str, assignee: str, actor: str) -> Alert:
        return self.lifecycle.assign(self.alerts.get(alert_id), assignee, actor)

    def close(self, alert_id: str, actor: str, notes: Optional[str] = None) -> Alert:
        return self.lifecycle.close(self.alerts.get(alert_id), actor, notes)

    async def redeliver(
        self,
        alert_id: str,
        actor: str,
        channels: Optional[List[str]] = None,
    ) -> List[DeliveryAttempt]:
        """
        Re-attempt delivery on the alert's channels, or a subset of them.

        The alert's status and workflow fields are left untouched.

        Raises:
            NotFound: Unknown alert
            ValidationError: A requested channel is not one of the alert's
        """
        alert = self.alerts.get(alert_id)
        targets = list(alert.delivery_channels)
        if channels:
            try:
                requested = [DeliveryChannel(ch) for ch in channels]
            except ValueError as e:
                raise ValidationError(f"Invalid delivery channel: {e}") from e
            unknown = [ch.value for ch in requested if ch not in alert.delivery_channels]
            if unknown:
                raise ValidationError(
                    f"Alert is not configured for channel(s): {', '.join(unknown)}"
                )
            targets = [ch for ch in targets if ch in requested]

        self.lifecycle.record_redelivery(alert, actor, [ch.value for ch in targets])
        return await self.dispatcher.deliver(alert, targets)

    async def test_delivery(self, channel: str, config: Dict[str, Any]) -> DeliveryAttempt:
        """
        Validate ad hoc channel configuration and send one test notification.

        Raises:
            ValidationError: Unknown channel or malformed configuration
        """
        try:
            channel = DeliveryChannel(channel)
        except ValueError:
            raise ValidationError(f"Invalid delivery channel: {channel}")
        return await self.dispatcher.test_delivery(channel, config_from_request(channel, config))

    # -- maintenance --------------------------------------------------------

    def release_expired_suppressions(self, now: Optional[datetime] = None) -> List[Alert]:
        """Reopen suppressed alerts whose suppression window has passed."""
        now = now or self._clock()
        released = [
            alert for alert in self.alerts.by_status(AlertStatus.SUPPRESSED)
            if self.lifecycle.release_if_expired(alert, now)
        ]
        if released:
            logger.info(f"Tenant {self.tenant_id}: unsuppressed {len(released)} expired alert(s)")
        return released

    def check_sla_breaches(self, now: Optional[datetime] = None) -> List[Alert]:
        """Latch newly breached SLAs on live alerts."""
        now = now or self._clock()
        breached = [
            alert for alert in self.alerts.all()
            if alert.sla_deadline is not None and self.lifecycle.record_sla_breach(alert, now)
        ]
        if breached:
            logger.warning(f"Tenant {self.tenant_id}: {len(breached)} SLA breach(es) detected")
        return breached

    def _audit_rule(self, action: str, actor: str, rule: AlertRule, **details: Any) -> None:
        self.audit.record(
            action, actor, "alert_rule", rule.id,
            tenant_id=self.tenant_id, timestamp=self._clock(), **details,
        )


class TenantRegistry:
    """Lazily creates one AlertingService per tenant around shared delivery."""

    def __init__(
        self,
        dispatcher: Optional[DeliveryDispatcher] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
        **lifecycle_options: Any,
    ):
        self.dispatcher = dispatcher if dispatcher is not None else DeliveryDispatcher(clock=clock)
        self.audit = audit if audit is not None else AuditLog()
        self._clock = clock
        self._lifecycle_options = lifecycle_options
        self._services: Dict[str, AlertingService] = {}
        self._lock = Lock()

    @classmethod
    def from_settings(
        cls,
        settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "TenantRegistry":
        """Build a registry with all four notifiers from application settings."""
        transport = SMTPTransport(
            host=settings.smtp_host,
            port=settings.smtp_port,
            from_address=settings.smtp_from_address,
            username=settings.smtp_username,
            password=settings.smtp_password,
            timeout=settings.delivery_timeout_seconds,
        )
        dispatcher = DeliveryDispatcher(
            notifiers=[
                SlackNotifier(http_client, resolve_hosts=settings.resolve_webhook_hosts),
                WebhookNotifier(http_client, resolve_hosts=settings.resolve_webhook_hosts),
                EmailNotifier(transport),
                InAppNotifier(),
            ],
            max_concurrent=settings.max_concurrent_deliveries,
            timeout=settings.delivery_timeout_seconds,
        )
        return cls(
            dispatcher=dispatcher,
            audit=AuditLog(settings.audit_log_dir),
            max_suppression_days=settings.max_suppression_days,
            min_suppression_reason=settings.min_suppression_reason_length,
            max_suppression_reason=settings.max_suppression_reason_length,
            max_resolution_notes=settings.max_resolution_notes_length,
        )

    def get(self, tenant_id: str = "default") -> AlertingService:
        with self._lock:
            service = self._services.get(tenant_id)
            if service is None:
                service = self._services[tenant_id] = AlertingService(
                    tenant_id=tenant_id,
                    dispatcher=self.dispatcher,
                    audit=self.audit,
                    clock=self._clock,
                    **self._lifecycle_options,
                )
                logger.debug(f"Created alerting service for tenant {tenant_id}")
            return service

    def all(self) -> List[AlertingService]:
        with self._lock:
            return list(self._services.values())

    def in_app_feed(self, tenant_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        notifier = self.dispatcher.notifiers.get(DeliveryChannel.IN_APP)
        if not isinstance(notifier, InAppNotifier):
            return []
        return notifier.feed(tenant_id).recent(limit)


__all__ = ["AlertingService", "TenantRegistry"]
