"""FastAPI authentication and tenancy dependencies."""
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError

from .jwt import ActorClaims, decode_actor_token
from ...core.config import settings


# HTTP Bearer token scheme for JWT authentication
bearer_scheme = HTTPBearer(auto_error=True)

# Scope required to create, change or delete alert rules
RULES_WRITE_SCOPE = "alert_rules:write"


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)]
) -> ActorClaims:
    """
    Resolve the acting user from the bearer token.

    Raises:
        HTTPException: 401 if the token is invalid, expired or missing
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        return decode_actor_token(credentials.credentials)
    except JWTError:
        raise credentials_exception


async def get_tenant_id(
    claims: Annotated[ActorClaims, Depends(get_current_user)],
    x_tenant_id: Annotated[Optional[str], Header()] = None,
) -> str:
    """
    Tenant the request acts on.

    Taken from the X-Tenant-ID header; without one, a token bound to a
    single tenant uses it and any other falls back to the default tenant.

    Raises:
        HTTPException: 403 if the token is not valid for that tenant
    """
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        tenant_id = claims.tenants[0] if len(claims.tenants) == 1 else settings.default_tenant
    if not claims.can_access(tenant_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Token is not valid for tenant '{tenant_id}'",
        )
    return tenant_id


def require_scopes(*required_scopes: str):
    """
    Dependency factory to require specific scopes.

    Usage:
        @app.post("/alert-rules", dependencies=[Depends(require_scopes(RULES_WRITE_SCOPE))])

    Returns:
        Dependency function that validates scopes
    """
    async def scope_checker(
        claims: Annotated[ActorClaims, Depends(get_current_user)]
    ) -> ActorClaims:
        if not claims.has_scopes(*required_scopes):
            missing = set(required_scopes) - set(claims.scopes)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scopes: {', '.join(sorted(missing))}",
            )
        return claims

    return scope_checker
