"""Authentication module for the compliance alerting API.

HS256 actor tokens carrying the acting user, their tenants and scopes.
"""
from .jwt import (
    issue_actor_token,
    decode_actor_token,
    ActorClaims,
)
from .dependencies import (
    get_current_user,
    get_tenant_id,
    require_scopes,
    bearer_scheme,
    RULES_WRITE_SCOPE,
)

__all__ = [
    "issue_actor_token",
    "decode_actor_token",
    "ActorClaims",
    # Dependencies
    "get_current_user",
    "get_tenant_id",
    "require_scopes",
    "bearer_scheme",
    "RULES_WRITE_SCOPE",
]
