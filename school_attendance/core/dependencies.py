from functools import lru_cache
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from school_attendance.core.authorization import (
    AuthorizationGate,
    HttpAuthorizationGate,
    StaticAuthorizationGate,
)
from school_attendance.core.cache import SummaryCache, summary_cache
from school_attendance.core.config import (
    AUTHZ_GRANTS,
    AUTHZ_MODE,
    AUTHZ_SERVICE_URL,
    AUTHZ_TIMEOUT_SECONDS,
    JWT_ALGORITHM,
    JWT_SECRET_KEY,
)
from school_attendance.core.exceptions import AuthenticationError, AuthorizationError
from school_attendance.core.security import Actor, JWTManager

security = HTTPBearer(
    scheme_name="Bearer token",
    description="Access token issued by the identity provider",
    auto_error=False,
)


@lru_cache
def get_jwt_manager() -> JWTManager:
    return JWTManager(JWT_SECRET_KEY, JWT_ALGORITHM)


async def get_current_actor(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    jwt_manager: JWTManager = Depends(get_jwt_manager),
) -> Actor:
    """Resolve the calling actor from the bearer token"""
    if credentials is None or not credentials.credentials.strip():
        raise AuthenticationError("Authentication data is required")

    actor = jwt_manager.actor_from_token(credentials.credentials)
    request.state.actor_id = actor.id
    request.state.school_id = actor.school_id
    return actor


@lru_cache
def get_authorization_gate() -> AuthorizationGate:
    if AUTHZ_MODE == "http":
        return HttpAuthorizationGate(AUTHZ_SERVICE_URL, timeout=AUTHZ_TIMEOUT_SECONDS)
    return StaticAuthorizationGate(AUTHZ_GRANTS)


def get_summary_cache() -> SummaryCache:
    return summary_cache


def resolve_school_scope(actor: Actor, school_id: Optional[int]) -> Optional[int]:
    """
    School-bound actors only ever see their own school; an explicit
    different school_id is rejected rather than silently replaced.
    """
    if actor.school_id is None:
        return school_id

    if school_id is not None and school_id != actor.school_id:
        raise AuthorizationError(
            "Access to another school's attendance is not allowed",
            details={"school_id": school_id},
        )
    return actor.school_id
