"""
Rule matching engine.

Evaluates each incoming test result against a tenant's enabled rules and
turns qualifying matches into alerts.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .alerts import Alert, TestResultSnapshot
from .delivery import DeliveryDispatcher
from .lifecycle import SYSTEM_ACTOR, AlertLifecycle
from .rules import AlertRule, RuleStore
from .sla import sla_deadline
from .store import AlertStore
from .trackers import ConsecutiveFailureTracker, CooldownTracker
from .types import TestResult, utcnow

logger = logging.getLogger(__name__)


class RuleMatchingEngine:
    """
    Evaluates test results against alert rules and creates alerts.

    Every matching rule fires independently; priority only decides the
    order in which rules are looked at. Alert creation finishes before
    delivery is scheduled, and delivery is never awaited here.
    """

    def __init__(
        self,
        rules: RuleStore,
        alerts: AlertStore,
        lifecycle: AlertLifecycle,
        dispatcher: Optional[DeliveryDispatcher] = None,
        streaks: Optional[ConsecutiveFailureTracker] = None,
        cooldowns: Optional[CooldownTracker] = None,
        tenant_id: str = "default",
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the engine.

        Args:
            rules: Rule store to read enabled rules from
            alerts: Store that receives created alerts
            lifecycle: Records the initial state of each alert
            dispatcher: Delivers created alerts (no delivery if None)
            streaks: Consecutive-failure state, keyed by (rule, test)
            cooldowns: Last-fire state, keyed by (rule, test)
            tenant_id: Tenant stamped on created alerts
            clock: Time source
        """
        self.rules = rules
        self.alerts = alerts
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.streaks = streaks if streaks is not None else ConsecutiveFailureTracker()
        self.cooldowns = cooldowns if cooldowns is not None else CooldownTracker()
        self.tenant_id = tenant_id
        self._clock = clock
        self._stats = {
            "results_processed": 0,
            "alerts_generated": 0,
            "suppressed_by_cooldown": 0,
            "rule_errors": 0,
        }

    def process_result(self, result: TestResult) -> List[Alert]:
        """
        Evaluate a result against all enabled rules.

        Args:
            result: Completed test result

        Returns:
            Alerts created for this result (possibly empty)

        Raises:
            RuntimeError: A dispatcher is set but no event loop is running;
                raised before any rule is evaluated
        """
        if self.dispatcher is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError as e:
                raise RuntimeError("Alert delivery needs a running event loop") from e

        self._stats["results_processed"] += 1
        created: List[Alert] = []

        for rule in self.rules.enabled_rules():
            try:
                alert = self._evaluate(rule, result)
            except Exception as e:
                self._stats["rule_errors"] += 1
                logger.error(f"Error evaluating rule {rule.name}: {e}", exc_info=True)
                continue
            if alert is not None:
                created.append(alert)

        for alert in created:
            if self.dispatcher is not None:
                self.dispatcher.schedule(alert)

        return created

    def _evaluate(self, rule: AlertRule, result: TestResult) -> Optional[Alert]:
        key = (rule.id, result.test_id)
        matched = rule.matches(result)
        streak = self.streaks.record(key, matched)
        if not matched or streak < rule.consecutive_failures:
            return None

        now = self._clock()
        if not self.cooldowns.try_acquire(key, now, rule.cooldown_minutes):
            self._stats["suppressed_by_cooldown"] += 1
            logger.debug(f"Rule {rule.name} cooling down for test {result.test_id}")
            return None

        try:
            alert = self._create_alert(rule, result, now)
        except Exception:
            self.cooldowns.release(key, now)
            raise

        self._stats["alerts_generated"] += 1
        logger.info(
            f"Rule {rule.name} fired alert #{alert.alert_number} "
            f"({alert.severity.value}) for test {result.test_id}"
        )
        return alert

    def _create_alert(self, rule: AlertRule, result: TestResult, now: datetime) -> Alert:
        alert = Alert(
            alert_number=self.alerts.next_number(),
            title=rule.render_title(result),
            description=result.message or None,
            severity=rule.alert_severity,
            alert_rule_id=rule.id,
            test_id=result.test_id,
            control_id=result.control_id,
            snapshot=TestResultSnapshot.capture(result),
            delivery_channels=list(rule.delivery_channels),
            channel_configs=dict(rule.channel_configs),
            tenant_id=self.tenant_id,
            sla_deadline=sla_deadline(now, rule.sla_hours),
        )
        self.lifecycle.open(alert)
        if rule.auto_assign_to:
            self.lifecycle.assign(alert, rule.auto_assign_to, SYSTEM_ACTOR)
        self.alerts.add(alert)
        self.rules.record_fire(rule.id)
        return alert

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "rules_count": len(self.rules),
            "total_alerts": len(self.alerts),
        }


__all__ = ["RuleMatchingEngine"]
