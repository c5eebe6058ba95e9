"""Pytest fixtures for compliance alerting tests."""
import os

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-alerting-tests")

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from typing import Generator, List, Optional

from fastapi.testclient import TestClient

from src.alerting.alerts import Alert
from src.alerting.delivery import DeliveryDispatcher
from src.alerting.errors import DeliveryFailure
from src.alerting.notifiers import BaseNotifier, InAppNotifier
from src.alerting.service import AlertingService, TenantRegistry
from src.alerting.types import DeliveryChannel, TestResult
from src.api.auth.jwt import issue_actor_token
from src.api.server import app, get_registry, limiter


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier(BaseNotifier):
    """Notifier that records what it was asked to send."""

    def __init__(self, channel: DeliveryChannel, error: Optional[str] = None, delay: float = 0):
        self.channel = channel
        self.error = error
        self.delay = delay
        self.sent: List[Alert] = []
        self.tests: list = []

    async def send(self, alert, config) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if config is None:
            raise DeliveryFailure(self.channel.value, "not configured")
        if self.error:
            raise DeliveryFailure(self.channel.value, self.error)
        self.sent.append(alert)

    async def send_test(self, config) -> None:
        if self.error:
            raise DeliveryFailure(self.channel.value, self.error)
        self.tests.append(config)


# --- Engine Fixtures ---

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifiers() -> dict:
    """One recording notifier per channel, keyed by channel."""
    return {
        DeliveryChannel.SLACK: RecordingNotifier(DeliveryChannel.SLACK),
        DeliveryChannel.EMAIL: RecordingNotifier(DeliveryChannel.EMAIL),
        DeliveryChannel.WEBHOOK: RecordingNotifier(DeliveryChannel.WEBHOOK),
        DeliveryChannel.IN_APP: RecordingNotifier(DeliveryChannel.IN_APP),
    }


@pytest.fixture
def dispatcher(notifiers: dict, clock: FakeClock) -> DeliveryDispatcher:
    return DeliveryDispatcher(notifiers=notifiers.values(), timeout=1.0, clock=clock)


@pytest.fixture
def service(dispatcher: DeliveryDispatcher, clock: FakeClock) -> AlertingService:
    return AlertingService(tenant_id="acme", dispatcher=dispatcher, clock=clock)


@pytest.fixture
def make_result():
    """Factory for test results with sensible defaults."""
    def _make(
        status: str = "fail",
        test_id: str = "test-1",
        severity: str = "high",
        **overrides,
    ) -> TestResult:
        data = {
            "test_id": test_id,
            "control_id": "ctrl-ac-1",
            "status": status,
            "severity": severity,
            "message": "MFA disabled for 3 users",
            "details": {"users": ["a", "b", "c"]},
            "test_identifier": "TST-AC-001",
            "test_title": "MFA enforced",
        }
        data.update(overrides)
        return TestResult.from_dict(data)
    return _make


@pytest.fixture
def rule_fields() -> dict:
    """Minimal valid rule definition delivering in-app only."""
    return {
        "name": "High severity failures",
        "alert_severity": "high",
        "delivery_channels": ["in_app"],
    }


# --- Authentication Fixtures ---

@pytest.fixture
def token_with_scopes() -> callable:
    """Factory fixture to create tokens with specific scopes."""
    def _create_token(scopes: list[str], subject: str = "user-1", tenants: Optional[list[str]] = None) -> str:
        return issue_actor_token(
            subject,
            tenants=tenants,
            scopes=scopes,
            expires_delta=timedelta(hours=1),
        )
    return _create_token


@pytest.fixture
def auth_headers(token_with_scopes) -> dict[str, str]:
    """Headers for a user who may manage rules."""
    token = token_with_scopes(["alert_rules:write"])
    return {"Authorization": f"Bearer {token}", "X-Tenant-ID": "acme"}


@pytest.fixture
def readonly_headers(token_with_scopes) -> dict[str, str]:
    token = token_with_scopes([], subject="viewer-1")
    return {"Authorization": f"Bearer {token}", "X-Tenant-ID": "acme"}


@pytest.fixture
def expired_auth_headers() -> dict[str, str]:
    token = issue_actor_token("user-1", expires_delta=timedelta(seconds=-1))
    return {"Authorization": f"Bearer {token}"}


# --- Client Fixtures ---

@pytest.fixture
def api_notifiers() -> dict:
    return {
        DeliveryChannel.SLACK: RecordingNotifier(DeliveryChannel.SLACK, error="returned status 500"),
        DeliveryChannel.EMAIL: RecordingNotifier(DeliveryChannel.EMAIL),
        DeliveryChannel.WEBHOOK: RecordingNotifier(DeliveryChannel.WEBHOOK),
        DeliveryChannel.IN_APP: InAppNotifier(),
    }


@pytest.fixture
def registry(api_notifiers: dict) -> TenantRegistry:
    return TenantRegistry(dispatcher=DeliveryDispatcher(notifiers=api_notifiers.values(), timeout=1.0))


@pytest.fixture
def test_client(registry: TenantRegistry) -> Generator[TestClient, None, None]:
    """Test client backed by an isolated registry with rate limiting off."""
    app.dependency_overrides[get_registry] = lambda: registry
    limiter.enabled = False
    try:
        with TestClient(app) as client:
            yield client
    finally:
        limiter.enabled = True
        app.dependency_overrides.clear()


@pytest.fixture
def make_notifier() -> type:
    """The recording notifier class, for tests that need custom behaviour."""
    return RecordingNotifier
