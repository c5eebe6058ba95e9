"""Tests for the alert store queue views and the in-app feed."""
import pytest
from datetime import datetime, timedelta, timezone

from src.alerting.alerts import Alert, TestResultSnapshot
from src.alerting.errors import ValidationError
from src.alerting.store import AlertStore, InAppFeed
from src.alerting.types import AlertSeverity, AlertStatus, DeliveryChannel

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(make_result) -> AlertStore:
    store = AlertStore()
    snapshot = TestResultSnapshot.capture(make_result())

    def _add(severity, status=AlertStatus.OPEN, sla_hours=None, age_hours=0, **fields):
        created = T0 - timedelta(hours=age_hours)
        alert = Alert(
            alert_number=store.next_number(),
            title=f"{severity} alert",
            severity=AlertSeverity(severity),
            alert_rule_id="rule-1",
            test_id="test-1",
            control_id="ctrl-ac-1",
            snapshot=snapshot,
            delivery_channels=[DeliveryChannel.IN_APP],
            status=status,
            created_at=created,
            sla_deadline=created + timedelta(hours=sla_hours) if sla_hours else None,
            **fields,
        )
        return store.add(alert)

    store.make = _add
    return store


class TestQueueSummary:

    def test_counts_by_queue(self, store):
        store.make("high", sla_hours=1, age_hours=3)
        store.make("low", status=AlertStatus.ACKNOWLEDGED)
        store.make("medium", status=AlertStatus.SUPPRESSED, sla_hours=1, age_hours=3)
        store.make("critical", status=AlertStatus.RESOLVED, sla_hours=1, age_hours=3,
                   resolved_at=T0)
        store.make("critical", status=AlertStatus.CLOSED, closed_at=T0)

        assert store.queue_summary(now=T0) == {
            "active": 2,
            "resolved": 1,
            "suppressed": 1,
            "closed": 1,
            "sla_breached": 2,
        }

    def test_empty_store(self, store):
        summary = store.queue_summary(now=T0)
        assert set(summary.values()) == {0}


class TestQueue:

    def test_active_queue_most_urgent_first(self, store):
        low = store.make("low", sla_hours=1)
        no_sla = store.make("critical")
        late = store.make("critical", sla_hours=10)
        soon = store.make("critical", sla_hours=2)
        store.make("high", status=AlertStatus.RESOLVED, resolved_at=T0)

        alerts, total = store.queue("active")

        assert total == 4
        assert [a.id for a in alerts] == [soon.id, late.id, no_sla.id, low.id]

    def test_named_queues_and_paging(self, store):
        store.make("high", status=AlertStatus.SUPPRESSED)
        store.make("high", status=AlertStatus.RESOLVED, resolved_at=T0)
        for _ in range(3):
            store.make("low")

        assert store.queue("suppressed")[1] == 1
        assert store.queue("resolved")[1] == 1
        page, total = store.queue("all", page=2, per_page=2)
        assert total == 5
        assert len(page) == 2

    def test_unknown_queue_rejected(self, store):
        with pytest.raises(ValidationError):
            store.queue("closed")


class TestInAppFeed:

    def test_feed_is_bounded_newest_first(self, store):
        feed = InAppFeed(max_items=3)
        alerts = [store.make("low") for _ in range(5)]
        for alert in alerts:
            feed.publish(alert)

        assert len(feed) == 3
        assert [item["alert_number"] for item in feed.recent()] == [5, 4, 3]
        assert [item["alert_number"] for item in feed.recent(limit=1)] == [5]
