"""Tests for rule matching and alert creation."""
import pytest
from datetime import timedelta

from src.alerting.engine import RuleMatchingEngine
from src.alerting.types import AlertStatus, DeliveryChannel


@pytest.mark.asyncio
async def test_matching_rule_creates_open_alert(service, rule_fields, make_result, clock):
    rule = service.create_rule("user-1", sla_hours=24, **rule_fields)

    alerts = await service.process_result(make_result())

    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.status == AlertStatus.OPEN
    assert alert.alert_rule_id == rule.id
    assert alert.severity.value == "high"
    assert alert.title == "MFA enforced failed on TST-AC-001"
    assert alert.tenant_id == "acme"
    assert alert.sla_deadline == clock.now + timedelta(hours=24)
    assert service.get_rule(rule.id).alerts_generated == 1


@pytest.mark.asyncio
async def test_alert_numbers_increase(service, rule_fields, make_result):
    service.create_rule("user-1", **rule_fields)

    first = await service.process_result(make_result(test_id="t-1"))
    second = await service.process_result(make_result(test_id="t-2"))

    assert second[0].alert_number == first[0].alert_number + 1


@pytest.mark.asyncio
async def test_pass_result_creates_nothing(service, rule_fields, make_result):
    service.create_rule("user-1", **rule_fields)
    assert await service.process_result(make_result(status="pass")) == []


@pytest.mark.asyncio
async def test_cooldown_deduplicates(service, rule_fields, make_result, clock):
    service.create_rule("user-1", cooldown_minutes=60, **rule_fields)

    assert len(await service.process_result(make_result())) == 1
    clock.advance(minutes=30)
    assert await service.process_result(make_result()) == []
    clock.advance(minutes=31)
    assert len(await service.process_result(make_result())) == 1

    alerts, total = service.list_alerts()
    assert total == 2


@pytest.mark.asyncio
async def test_cooldown_is_per_test(service, rule_fields, make_result):
    service.create_rule("user-1", cooldown_minutes=60, **rule_fields)

    assert len(await service.process_result(make_result(test_id="t-1"))) == 1
    assert len(await service.process_result(make_result(test_id="t-2"))) == 1


@pytest.mark.asyncio
async def test_streak_reset_by_passing_result(service, rule_fields, make_result):
    service.create_rule("user-1", consecutive_failures=3, **rule_fields)

    created = []
    for status in ["fail", "fail", "pass", "fail", "fail", "fail"]:
        created.extend(await service.process_result(make_result(status=status)))

    assert len(created) == 1


@pytest.mark.asyncio
async def test_streak_reset_by_unmatched_status(service, rule_fields, make_result):
    service.create_rule("user-1", consecutive_failures=2, **rule_fields)

    created = []
    for status in ["fail", "error", "fail"]:
        created.extend(await service.process_result(make_result(status=status)))

    assert created == []


@pytest.mark.asyncio
async def test_all_matching_rules_fire(service, rule_fields, make_result):
    first = service.create_rule("user-1", priority=1, **{**rule_fields, "name": "first"})
    second = service.create_rule(
        "user-1", priority=2,
        **{**rule_fields, "name": "second", "alert_severity": "critical"},
    )

    alerts = await service.process_result(make_result())

    assert [a.alert_rule_id for a in alerts] == [first.id, second.id]
    assert [a.severity.value for a in alerts] == ["high", "critical"]


@pytest.mark.asyncio
async def test_disabled_rule_is_skipped(service, rule_fields, make_result):
    rule = service.create_rule("user-1", **rule_fields)
    service.disable_rule(rule.id, "user-1")
    assert await service.process_result(make_result()) == []


@pytest.mark.asyncio
async def test_snapshot_is_isolated_from_result(service, rule_fields, make_result):
    service.create_rule("user-1", **rule_fields)
    result = make_result()

    alert = (await service.process_result(result))[0]
    result.details["users"].append("d")
    result.message = "changed"

    assert alert.snapshot.details == {"users": ["a", "b", "c"]}
    assert alert.snapshot.message == "MFA disabled for 3 users"


@pytest.mark.asyncio
async def test_auto_assign(service, rule_fields, make_result):
    service.create_rule("user-1", auto_assign_to="oncall-7", **rule_fields)

    alert = (await service.process_result(make_result()))[0]

    assert alert.assigned_to == "oncall-7"
    assert alert.status == AlertStatus.OPEN


@pytest.mark.asyncio
async def test_delivery_is_scheduled(service, rule_fields, make_result, notifiers):
    service.create_rule("user-1", **rule_fields)

    alert = (await service.process_result(make_result()))[0]
    await service.dispatcher.drain()

    assert notifiers[DeliveryChannel.IN_APP].sent == [alert]
    assert DeliveryChannel.IN_APP in alert.delivered_at


@pytest.mark.asyncio
async def test_missing_channel_config_does_not_block_alert(service, rule_fields, make_result):
    rule_fields["delivery_channels"] = ["slack", "in_app"]
    service.create_rule("user-1", **rule_fields)

    alert = (await service.process_result(make_result()))[0]
    await service.dispatcher.drain()

    assert alert.status == AlertStatus.OPEN
    assert list(alert.delivered_at) == [DeliveryChannel.IN_APP]
    failure = [a for a in alert.delivery_attempts if not a.success][0]
    assert failure.channel == DeliveryChannel.SLACK


@pytest.mark.asyncio
async def test_rule_error_does_not_stop_other_rules(service, rule_fields, make_result, monkeypatch):
    broken = service.create_rule("user-1", priority=1, **{**rule_fields, "name": "broken"})
    healthy = service.create_rule("user-1", priority=2, **{**rule_fields, "name": "healthy"})

    original = type(broken).render_title

    def render_title(rule, result):
        if rule.id == broken.id:
            raise RuntimeError("template exploded")
        return original(rule, result)

    monkeypatch.setattr(type(broken), "render_title", render_title)

    alerts = await service.process_result(make_result())

    assert [a.alert_rule_id for a in alerts] == [healthy.id]
    assert service.engine.get_stats()["rule_errors"] == 1


def test_engine_with_dispatcher_needs_running_loop(service, rule_fields, make_result):
    rule = service.create_rule("user-1", **rule_fields)

    with pytest.raises(RuntimeError):
        service.engine.process_result(make_result())

    assert len(service.alerts) == 0
    assert service.engine.streaks.get((rule.id, "test-1")) == 0
    assert service.get_rule(rule.id).alerts_generated == 0


def test_engine_without_dispatcher_runs_synchronously(service, rule_fields, make_result):
    service.create_rule("user-1", **rule_fields)
    engine = RuleMatchingEngine(
        rules=service.rules, alerts=service.alerts, lifecycle=service.lifecycle, tenant_id="acme"
    )

    alerts = engine.process_result(make_result())

    assert len(alerts) == 1
    assert alerts[0].delivery_attempts == []
