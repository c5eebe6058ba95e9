"""FastAPI server for the compliance alerting engine."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .auth import RULES_WRITE_SCOPE, ActorClaims, get_current_user, get_tenant_id, require_scopes
from ..alerting import (
    AlertingService,
    Conflict,
    InvalidTransition,
    MaintenanceLoop,
    NotFound,
    TenantRegistry,
    TestResult,
    ValidationError,
)
from ..core.config import settings

logger = logging.getLogger(__name__)

# Global registry instance
registry: Optional[TenantRegistry] = None
maintenance: Optional[MaintenanceLoop] = None

# Rate limiter configuration
limiter = Limiter(key_func=get_remote_address)

# Type aliases for request dependencies
AuthenticatedUser = Annotated[ActorClaims, Depends(get_current_user)]
RuleEditor = Annotated[ActorClaims, Depends(require_scopes(RULES_WRITE_SCOPE))]
TenantID = Annotated[str, Depends(get_tenant_id)]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the tenant registry and start background maintenance."""
    global registry, maintenance

    registry = TenantRegistry.from_settings(settings)
    maintenance = MaintenanceLoop(registry, settings.maintenance_interval_seconds)
    await maintenance.start()
    logger.info("Compliance alerting API initialized")

    try:
        yield
    finally:
        await maintenance.stop()
        await registry.dispatcher.drain()
        logger.info("Compliance alerting API shutting down")


app = FastAPI(
    title="Compliance Alerting API",
    description="Alert rules, alert workflow and notification delivery for compliance tests",
    version="1.0.0",
    lifespan=lifespan,
)

# Add rate limiter to app state and exception handler
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# --- Error mapping ---

def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": message})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(400, str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return _error(404, str(exc))


@app.exception_handler(Conflict)
async def conflict_handler(request: Request, exc: Conflict):
    return _error(409, str(exc))


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return _error(422, str(exc))


def get_registry() -> TenantRegistry:
    if registry is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return registry


def get_service(
    tenant_id: TenantID,
    tenants: Annotated[TenantRegistry, Depends(get_registry)],
) -> AlertingService:
    return tenants.get(tenant_id)


Service = Annotated[AlertingService, Depends(get_service)]


# --- Request Models ---

class RuleCreate(BaseModel):
    """Request model for creating an alert rule."""
    name: str
    description: Optional[str] = None
    enabled: bool = True
    priority: Optional[int] = None
    match_severities: list[str] = Field(default_factory=list)
    match_result_statuses: list[str] = Field(default_factory=list)
    match_test_types: list[str] = Field(default_factory=list)
    match_control_ids: list[str] = Field(default_factory=list)
    match_tags: list[str] = Field(default_factory=list)
    consecutive_failures: Optional[int] = None
    cooldown_minutes: Optional[int] = None
    alert_severity: str
    alert_title_template: Optional[str] = None
    auto_assign_to: Optional[str] = None
    sla_hours: Optional[int] = None
    delivery_channels: list[str]
    slack_webhook_url: Optional[str] = None
    email_recipients: list[str] = Field(default_factory=list)
    webhook_url: Optional[str] = None
    webhook_headers: dict[str, str] = Field(default_factory=dict)


class RuleUpdate(BaseModel):
    """Request model for a partial alert rule update."""
    name: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[int] = None
    match_severities: Optional[list[str]] = None
    match_result_statuses: Optional[list[str]] = None
    match_test_types: Optional[list[str]] = None
    match_control_ids: Optional[list[str]] = None
    match_tags: Optional[list[str]] = None
    consecutive_failures: Optional[int] = None
    cooldown_minutes: Optional[int] = None
    alert_severity: Optional[str] = None
    alert_title_template: Optional[str] = None
    auto_assign_to: Optional[str] = None
    sla_hours: Optional[int] = None
    delivery_channels: Optional[list[str]] = None
    slack_webhook_url: Optional[str] = None
    email_recipients: Optional[list[str]] = None
    webhook_url: Optional[str] = None
    webhook_headers: Optional[dict[str, str]] = None


class ResultIngest(BaseModel):
    """Request model for a completed compliance test result."""
    test_id: str
    control_id: str
    status: str
    severity: str
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    tested_at: Optional[datetime] = None
    result_id: Optional[str] = None
    test_identifier: str = ""
    test_title: str = ""
    test_type: str = ""
    tags: list[str] = Field(default_factory=list)


class StatusChangeRequest(BaseModel):
    status: str


class AssignRequest(BaseModel):
    assigned_to: str


class ResolveRequest(BaseModel):
    resolution_notes: str


class SuppressRequest(BaseModel):
    suppressed_until: datetime
    suppression_reason: str


class CloseRequest(BaseModel):
    resolution_notes: Optional[str] = None


class RedeliverRequest(BaseModel):
    channels: list[str] = Field(default_factory=list)


class DeliveryCheckRequest(BaseModel):
    """Ad hoc channel configuration for a test notification."""
    channel: str
    slack_webhook_url: Optional[str] = None
    email_recipients: list[str] = Field(default_factory=list)
    webhook_url: Optional[str] = None
    webhook_headers: dict[str, str] = Field(default_factory=dict)


def _page(items: list, total: int, page: int, per_page: int) -> dict:
    return {
        "items": items,
        "total": total,
        "page": page,
        "per_page": per_page,
    }


def _alert_detail(service: AlertingService, alert) -> dict:
    data = alert.to_dict()
    data["available_transitions"] = service.available_actions(alert.id)["transitions"]
    return data


# --- Endpoints ---

@app.get("/")
@app.get("/health")
@limiter.limit("300/minute")
async def health_check(request: Request):
    """Health check endpoint - no authentication required."""
    return {
        "status": "healthy",
        "service": "compliance-alerting",
        "version": "1.0.0",
    }


@app.get("/alert-rules")
@limiter.limit("100/minute")
async def list_alert_rules(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    enabled: Optional[bool] = Query(None, description="Filter by enabled state"),
    include_deprecated: bool = Query(False),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    """List alert rules sorted by priority. Requires authentication."""
    rules, total = service.list_rules(
        enabled=enabled,
        include_deprecated=include_deprecated,
        page=page,
        per_page=per_page,
    )
    return _page([r.to_dict() for r in rules], total, page, per_page)


@app.post("/alert-rules", status_code=201)
@limiter.limit("30/minute")
async def create_alert_rule(
    request: Request,
    current_user: RuleEditor,
    service: Service,
    rule: RuleCreate,
):
    """Create an alert rule. Requires the rule-write scope."""
    created = service.create_rule(current_user.actor, **rule.model_dump(exclude_unset=True))
    return created.to_dict()


@app.get("/alert-rules/{rule_id}")
@limiter.limit("100/minute")
async def get_alert_rule(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    rule_id: str,
):
    """Get a specific alert rule. Requires authentication."""
    return service.get_rule(rule_id).to_dict()


@app.patch("/alert-rules/{rule_id}")
@limiter.limit("30/minute")
async def update_alert_rule(
    request: Request,
    current_user: RuleEditor,
    service: Service,
    rule_id: str,
    update: RuleUpdate,
):
    """Partially update an alert rule. Requires the rule-write scope."""
    fields = update.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationError("No fields to update")
    return service.update_rule(rule_id, current_user.actor, **fields).to_dict()


@app.delete("/alert-rules/{rule_id}")
@limiter.limit("30/minute")
async def delete_alert_rule(
    request: Request,
    current_user: RuleEditor,
    service: Service,
    rule_id: str,
):
    """Delete an alert rule, or deprecate it if it has fired alerts."""
    hard_deleted = service.delete_rule(rule_id, current_user.actor)
    return {"id": rule_id, "deleted": hard_deleted, "deprecated": not hard_deleted}


@app.post("/alert-rules/{rule_id}/enable")
@limiter.limit("30/minute")
async def enable_alert_rule(
    request: Request,
    current_user: RuleEditor,
    service: Service,
    rule_id: str,
):
    return service.enable_rule(rule_id, current_user.actor).to_dict()


@app.post("/alert-rules/{rule_id}/disable")
@limiter.limit("30/minute")
async def disable_alert_rule(
    request: Request,
    current_user: RuleEditor,
    service: Service,
    rule_id: str,
):
    return service.disable_rule(rule_id, current_user.actor).to_dict()


@app.post("/test-results", status_code=202)
@limiter.limit("600/minute")
async def ingest_test_result(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    result: ResultIngest,
):
    """
    Ingest a completed test result.

    Responds once any alerts exist; delivery continues in the background.
    """
    try:
        test_result = TestResult.from_dict(result.model_dump(exclude_none=True))
    except ValueError as e:
        raise ValidationError(str(e)) from e
    alerts = await service.process_result(test_result)
    return {
        "alerts_created": len(alerts),
        "alerts": [a.to_dict(include_history=False) for a in alerts],
    }


@app.get("/alerts")
@limiter.limit("100/minute")
async def list_alerts(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    status: Optional[list[str]] = Query(None, description="Filter by status"),
    severity: Optional[list[str]] = Query(None, description="Filter by severity"),
    assigned_to: Optional[str] = Query(None, description="Assignee id or 'unassigned'"),
    control_id: Optional[str] = None,
    test_id: Optional[str] = None,
    sla_breached: Optional[bool] = None,
    search: Optional[str] = None,
    sort: str = "created_at",
    order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    """List alerts with filters, sorting and pagination. Requires authentication."""
    alerts, total = service.list_alerts(
        status=status,
        severity=severity,
        assigned_to=assigned_to,
        control_id=control_id,
        test_id=test_id,
        sla_breached=sla_breached,
        search=search,
        sort=sort,
        order=order,
        page=page,
        per_page=per_page,
    )
    return _page([a.to_dict(include_history=False) for a in alerts], total, page, per_page)


@app.post("/alerts/test-delivery")
@limiter.limit("10/minute")
async def test_delivery(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    body: DeliveryCheckRequest,
):
    """Send one test notification with ad hoc channel configuration."""
    config = body.model_dump(exclude={"channel"})
    attempt = await service.test_delivery(body.channel, config)
    if not attempt.success:
        raise HTTPException(
            status_code=422,
            detail={"message": "Test delivery failed", "channel": body.channel, "error": attempt.error},
        )
    return {"success": True, "channel": body.channel, "message": "Test notification sent successfully"}


@app.get("/alerts/queue")
@limiter.limit("100/minute")
async def alert_queue(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    queue: str = Query("active", description="active, resolved, suppressed or all"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    """Operations queue: counts per queue plus one page of the chosen queue."""
    alerts, total = service.alert_queue(queue, page=page, per_page=per_page)
    data = _page([a.to_dict(include_history=False) for a in alerts], total, page, per_page)
    data["queue"] = queue
    data["queue_summary"] = service.queue_summary()
    return data


@app.get("/alerts/{alert_id}")
@limiter.limit("100/minute")
async def get_alert(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    alert_id: str,
):
    """Get a specific alert with its history and delivery log."""
    return _alert_detail(service, service.get_alert(alert_id))


@app.put("/alerts/{alert_id}/status")
@limiter.limit("30/minute")
async def change_alert_status(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    alert_id: str,
    body: StatusChangeRequest,
):
    alert = service.change_status(alert_id, body.status, current_user.actor)
    return _alert_detail(service, alert)


@app.put("/alerts/{alert_id}/assign")
@limiter.limit("30/minute")
async def assign_alert(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    alert_id: str,
    body: AssignRequest,
):
    alert = service.assign(alert_id, body.assigned_to, current_user.actor)
    return _alert_detail(service, alert)


@app.put("/alerts/{alert_id}/resolve")
@limiter.limit("30/minute")
async def resolve_alert(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    alert_id: str,
    body: ResolveRequest,
):
    alert = service.resolve(alert_id, body.resolution_notes, current_user.actor)
    return _alert_detail(service, alert)


@app.put("/alerts/{alert_id}/suppress")
@limiter.limit("30/minute")
async def suppress_alert(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    alert_id: str,
    body: SuppressRequest,
):
    alert = service.suppress(
        alert_id, body.suppressed_until, body.suppression_reason, current_user.actor
    )
    return _alert_detail(service, alert)


@app.put("/alerts/{alert_id}/close")
@limiter.limit("30/minute")
async def close_alert(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    alert_id: str,
    body: CloseRequest,
):
    alert = service.close(alert_id, current_user.actor, body.resolution_notes)
    return _alert_detail(service, alert)


@app.post("/alerts/{alert_id}/redeliver")
@limiter.limit("10/minute")
async def redeliver_alert(
    request: Request,
    current_user: AuthenticatedUser,
    service: Service,
    alert_id: str,
    body: Optional[RedeliverRequest] = None,
):
    """Re-attempt delivery on the alert's channels (or a subset)."""
    channels = body.channels if body else None
    attempts = await service.redeliver(alert_id, current_user.actor, channels)
    alert = service.get_alert(alert_id)
    return {
        "alert_id": alert_id,
        "attempts": [a.to_dict() for a in attempts],
        "delivered_at": {ch.value: ts.isoformat() for ch, ts in alert.delivered_at.items()},
    }


@app.get("/notifications")
@limiter.limit("100/minute")
async def in_app_notifications(
    request: Request,
    current_user: AuthenticatedUser,
    tenant_id: TenantID,
    tenants: Annotated[TenantRegistry, Depends(get_registry)],
    limit: int = Query(20, ge=1, le=100),
):
    """Most recent in-app notifications for the tenant."""
    return {"items": tenants.in_app_feed(tenant_id, limit)}


# Run with: uvicorn src.api.server:app --reload
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
    )
