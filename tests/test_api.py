"""Tests for the HTTP API."""
import pytest
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from src.alerting.types import DeliveryChannel

RULE = {
    "name": "Critical control failures",
    "alert_severity": "critical",
    "delivery_channels": ["slack", "email", "in_app"],
    "slack_webhook_url": "https://hooks.slack.com/services/T/B/X",
    "email_recipients": ["secops@example.com"],
    "sla_hours": 24,
}

RESULT = {
    "test_id": "test-1",
    "control_id": "ctrl-ac-1",
    "status": "fail",
    "severity": "critical",
    "message": "MFA disabled for 3 users",
    "test_identifier": "TST-AC-001",
    "test_title": "MFA enforced",
}


@pytest.fixture
def alert_id(test_client: TestClient, auth_headers: dict) -> str:
    """Create a rule, ingest a failing result and return the alert id."""
    assert test_client.post("/alert-rules", json=RULE, headers=auth_headers).status_code == 201
    response = test_client.post("/test-results", json=RESULT, headers=auth_headers)
    assert response.status_code == 202
    return response.json()["alerts"][0]["id"]


class TestHealthAndAuth:

    def test_health_check_no_auth(self, test_client: TestClient):
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json()["service"] == "compliance-alerting"

    def test_missing_token_rejected(self, test_client: TestClient):
        response = test_client.get("/alerts")
        assert response.status_code in (401, 403)

    def test_invalid_token_rejected(self, test_client: TestClient):
        response = test_client.get("/alerts", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert "Could not validate credentials" in response.json()["detail"]

    def test_expired_token_rejected(self, test_client: TestClient, expired_auth_headers: dict):
        response = test_client.get("/alerts", headers=expired_auth_headers)
        assert response.status_code == 401

    def test_token_bound_to_other_tenant_rejected(self, test_client: TestClient, token_with_scopes):
        token = token_with_scopes([], tenants=["acme"])
        response = test_client.get(
            "/alerts", headers={"Authorization": f"Bearer {token}", "X-Tenant-ID": "globex"}
        )
        assert response.status_code == 403

    def test_single_tenant_token_selects_tenant(self, test_client: TestClient, auth_headers: dict, token_with_scopes):
        test_client.post("/alert-rules", json=RULE, headers=auth_headers)
        token = token_with_scopes([], tenants=["acme"])

        response = test_client.get("/alert-rules", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json()["total"] == 1

    def test_rule_write_requires_scope(self, test_client: TestClient, readonly_headers: dict):
        response = test_client.post("/alert-rules", json=RULE, headers=readonly_headers)
        assert response.status_code == 403
        assert "alert_rules:write" in response.json()["detail"]


class TestAlertRules:

    def test_create_and_get(self, test_client: TestClient, auth_headers: dict):
        response = test_client.post("/alert-rules", json=RULE, headers=auth_headers)
        assert response.status_code == 201
        rule = response.json()
        assert rule["priority"] == 100
        assert rule["consecutive_failures"] == 1
        assert rule["match_result_statuses"] == ["fail"]
        assert rule["email_recipients"] == ["secops@example.com"]
        assert rule["created_by"] == "user-1"

        fetched = test_client.get(f"/alert-rules/{rule['id']}", headers=auth_headers)
        assert fetched.json()["name"] == RULE["name"]

    def test_duplicate_name_conflict(self, test_client: TestClient, auth_headers: dict):
        test_client.post("/alert-rules", json=RULE, headers=auth_headers)
        response = test_client.post("/alert-rules", json=RULE, headers=auth_headers)
        assert response.status_code == 409

    def test_invalid_rule_rejected(self, test_client: TestClient, auth_headers: dict):
        response = test_client.post(
            "/alert-rules", json={**RULE, "delivery_channels": []}, headers=auth_headers
        )
        assert response.status_code == 400

    def test_missing_fields_rejected(self, test_client: TestClient, auth_headers: dict):
        response = test_client.post("/alert-rules", json={"name": "x"}, headers=auth_headers)
        assert response.status_code == 400

    def test_update_enable_disable(self, test_client: TestClient, auth_headers: dict):
        rule_id = test_client.post("/alert-rules", json=RULE, headers=auth_headers).json()["id"]

        patched = test_client.patch(
            f"/alert-rules/{rule_id}", json={"priority": 5, "cooldown_minutes": 30}, headers=auth_headers
        )
        assert patched.status_code == 200
        assert patched.json()["priority"] == 5

        disabled = test_client.post(f"/alert-rules/{rule_id}/disable", headers=auth_headers)
        assert disabled.json()["enabled"] is False

        listed = test_client.get("/alert-rules?enabled=true", headers=auth_headers).json()
        assert listed["total"] == 0

        enabled = test_client.post(f"/alert-rules/{rule_id}/enable", headers=auth_headers)
        assert enabled.json()["enabled"] is True

    def test_delete_unfired_rule(self, test_client: TestClient, auth_headers: dict):
        rule_id = test_client.post("/alert-rules", json=RULE, headers=auth_headers).json()["id"]

        response = test_client.delete(f"/alert-rules/{rule_id}", headers=auth_headers)

        assert response.json() == {"id": rule_id, "deleted": True, "deprecated": False}
        assert test_client.get(f"/alert-rules/{rule_id}", headers=auth_headers).status_code == 404

    def test_delete_fired_rule_deprecates(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        rule_id = test_client.get(f"/alerts/{alert_id}", headers=auth_headers).json()["alert_rule_id"]

        response = test_client.delete(f"/alert-rules/{rule_id}", headers=auth_headers)

        assert response.json()["deprecated"] is True
        rule = test_client.get(f"/alert-rules/{rule_id}", headers=auth_headers).json()
        assert rule["deprecated"] is True
        assert rule["enabled"] is False


class TestAlerts:

    def test_ingest_creates_alert(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        alert = test_client.get(f"/alerts/{alert_id}", headers=auth_headers).json()

        assert alert["status"] == "open"
        assert alert["severity"] == "critical"
        assert alert["title"] == "MFA enforced failed on TST-AC-001"
        assert alert["test_result"]["message"] == RESULT["message"]
        assert alert["sla_breached"] is False
        assert 23.9 <= alert["hours_remaining"] <= 24.0
        assert alert["available_transitions"] == [
            "acknowledged", "in_progress", "resolved", "suppressed", "closed",
        ]

    def test_invalid_result_rejected(self, test_client: TestClient, auth_headers: dict):
        response = test_client.post(
            "/test-results", json={**RESULT, "status": "exploded"}, headers=auth_headers
        )
        assert response.status_code == 400

    def test_status_change_and_invalid_transition(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        response = test_client.put(
            f"/alerts/{alert_id}/status", json={"status": "in_progress"}, headers=auth_headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "in_progress"

        response = test_client.put(
            f"/alerts/{alert_id}/status", json={"status": "acknowledged"}, headers=auth_headers
        )
        assert response.status_code == 422

    def test_resolve_requires_notes(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        response = test_client.put(
            f"/alerts/{alert_id}/resolve", json={"resolution_notes": ""}, headers=auth_headers
        )
        assert response.status_code == 400

        response = test_client.put(
            f"/alerts/{alert_id}/resolve", json={"resolution_notes": "Enforced MFA"}, headers=auth_headers
        )
        assert response.status_code == 200
        body = response.json()
        assert body["resolved_by"] == "user-1"
        assert body["available_transitions"] == ["suppressed", "closed"]

    def test_suppress_validation(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        until = (datetime.now(timezone.utc) + timedelta(days=30)).isoformat()

        short = test_client.put(
            f"/alerts/{alert_id}/suppress",
            json={"suppressed_until": until, "suppression_reason": "too short"},
            headers=auth_headers,
        )
        assert short.status_code == 400

        ok = test_client.put(
            f"/alerts/{alert_id}/suppress",
            json={"suppressed_until": until, "suppression_reason": "Accepted risk until Q3 review"},
            headers=auth_headers,
        )
        assert ok.status_code == 200
        assert ok.json()["status"] == "suppressed"

    def test_assign_and_filter(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        response = test_client.put(
            f"/alerts/{alert_id}/assign", json={"assigned_to": "user-9"}, headers=auth_headers
        )
        assert response.json()["assigned_to"] == "user-9"
        assert response.json()["status"] == "open"

        mine = test_client.get("/alerts?assigned_to=user-9", headers=auth_headers).json()
        unassigned = test_client.get("/alerts?assigned_to=unassigned", headers=auth_headers).json()
        assert mine["total"] == 1
        assert unassigned["total"] == 0

    def test_close_is_terminal(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        closed = test_client.put(f"/alerts/{alert_id}/close", json={}, headers=auth_headers)
        assert closed.json()["status"] == "closed"
        assert closed.json()["closed_by"] == "user-1"

        again = test_client.put(f"/alerts/{alert_id}/close", json={}, headers=auth_headers)
        assert again.status_code == 422

    def test_unknown_alert(self, test_client: TestClient, auth_headers: dict):
        assert test_client.get("/alerts/missing", headers=auth_headers).status_code == 404

    def test_list_filters(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        response = test_client.get("/alerts?status=open&severity=critical", headers=auth_headers)
        assert response.json()["total"] == 1
        response = test_client.get("/alerts?status=resolved", headers=auth_headers)
        assert response.json()["total"] == 0

    def test_alert_queue(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        response = test_client.get("/alerts/queue", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["queue"] == "active"
        assert body["queue_summary"] == {
            "active": 1, "resolved": 0, "suppressed": 0, "closed": 0, "sla_breached": 0,
        }
        assert [item["id"] for item in body["items"]] == [alert_id]

        test_client.put(f"/alerts/{alert_id}/resolve", json={"resolution_notes": "Fixed"}, headers=auth_headers)
        resolved = test_client.get("/alerts/queue?queue=resolved", headers=auth_headers).json()
        assert resolved["total"] == 1
        assert resolved["queue_summary"]["active"] == 0

    def test_unknown_queue_rejected(self, test_client: TestClient, auth_headers: dict):
        response = test_client.get("/alerts/queue?queue=archived", headers=auth_headers)
        assert response.status_code == 400

    def test_tenants_are_isolated(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        other = {**auth_headers, "X-Tenant-ID": "globex"}
        assert test_client.get("/alerts", headers=other).json()["total"] == 0
        assert test_client.get(f"/alerts/{alert_id}", headers=other).status_code == 404


class TestDelivery:

    def test_redeliver(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        response = test_client.post(f"/alerts/{alert_id}/redeliver", json={}, headers=auth_headers)

        assert response.status_code == 200
        attempts = {a["channel"]: a for a in response.json()["attempts"]}
        assert attempts["slack"]["success"] is False
        assert attempts["email"]["success"] is True
        assert "email" in response.json()["delivered_at"]
        assert "slack" not in response.json()["delivered_at"]

        alert = test_client.get(f"/alerts/{alert_id}", headers=auth_headers).json()
        assert alert["status"] == "open"

    def test_redeliver_subset(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        response = test_client.post(
            f"/alerts/{alert_id}/redeliver", json={"channels": ["email"]}, headers=auth_headers
        )
        assert [a["channel"] for a in response.json()["attempts"]] == ["email"]

        response = test_client.post(
            f"/alerts/{alert_id}/redeliver", json={"channels": ["webhook"]}, headers=auth_headers
        )
        assert response.status_code == 400

    def test_test_delivery_success(self, test_client: TestClient, auth_headers: dict, api_notifiers: dict):
        response = test_client.post(
            "/alerts/test-delivery",
            json={"channel": "email", "email_recipients": ["secops@example.com"]},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert len(api_notifiers[DeliveryChannel.EMAIL].tests) == 1

    def test_test_delivery_failure(self, test_client: TestClient, auth_headers: dict):
        response = test_client.post(
            "/alerts/test-delivery",
            json={"channel": "slack", "slack_webhook_url": "https://hooks.slack.com/services/T/B/X"},
            headers=auth_headers,
        )
        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "returned status 500"

    def test_test_delivery_invalid_config(self, test_client: TestClient, auth_headers: dict):
        response = test_client.post(
            "/alerts/test-delivery", json={"channel": "webhook"}, headers=auth_headers
        )
        assert response.status_code == 400

    def test_in_app_notifications(self, test_client: TestClient, auth_headers: dict, alert_id: str):
        test_client.post(f"/alerts/{alert_id}/redeliver", json={"channels": ["in_app"]}, headers=auth_headers)
        items = test_client.get("/notifications", headers=auth_headers).json()["items"]
        assert items[0]["alert_id"] == alert_id
