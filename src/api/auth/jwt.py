"""Actor tokens for the alerting API.

HS256 bearer tokens issued with python-jose. A token names the actor whose
id is recorded on every rule and alert action, the tenants that actor may
act on, and the scopes it holds.
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel, Field
import structlog

logger = structlog.get_logger(__name__)


# Configuration - in production, load from environment/secrets manager
_jwt_secret = os.getenv("JWT_SECRET_KEY")
if not _jwt_secret:
    raise ValueError("JWT_SECRET_KEY environment variable must be set")
JWT_SECRET_KEY: str = _jwt_secret
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_ACCESS_TOKEN_EXPIRE_MINUTES = int(
    os.getenv("JWT_ACCESS_TOKEN_EXPIRE_MINUTES", "30")
)

TENANTS_CLAIM = "tenants"


class ActorClaims(BaseModel):
    """Claims of a validated actor token."""

    actor: str  # recorded as created_by / resolved_by / closed_by ...
    tenants: list[str] = Field(default_factory=list)  # empty: any tenant
    scopes: list[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None

    def can_access(self, tenant_id: str) -> bool:
        return not self.tenants or tenant_id in self.tenants

    def has_scopes(self, *scopes: str) -> bool:
        return set(scopes) <= set(self.scopes)


def issue_actor_token(
    actor: str,
    tenants: Optional[list[str]] = None,
    scopes: Optional[list[str]] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Issue a signed token for an actor.

    Args:
        actor: User or system id the token acts as
        tenants: Tenants the actor may act on; omit for every tenant
        scopes: Permission scopes, e.g. ``alert_rules:write``
        expires_delta: Lifetime, JWT_ACCESS_TOKEN_EXPIRE_MINUTES by default

    Returns:
        Encoded JWT
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    issued_at = datetime.now(timezone.utc)

    payload = {
        "sub": actor,
        TENANTS_CLAIM: list(tenants or []),
        "scopes": list(scopes or []),
        "iat": issued_at,
        "exp": issued_at + expires_delta,
    }
    logger.debug("actor_token_issued", actor=actor, tenants=payload[TENANTS_CLAIM])
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_actor_token(token: str) -> ActorClaims:
    """
    Validate a token and return its claims.

    Raises:
        JWTError: Bad signature, expired, or malformed actor/tenant claims
    """
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning("token_rejected", error=str(e))
        raise

    actor = payload.get("sub")
    if not actor:
        raise JWTError("Token missing subject claim")

    tenants = payload.get(TENANTS_CLAIM, [])
    if not isinstance(tenants, list) or not all(isinstance(t, str) for t in tenants):
        logger.warning("token_rejected", actor=actor, error="malformed tenants claim")
        raise JWTError("Malformed tenants claim")

    exp = payload.get("exp")
    return ActorClaims(
        actor=str(actor),
        tenants=tenants,
        scopes=payload.get("scopes", []),
        expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )
