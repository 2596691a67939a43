"""
Capability checks delegated to an external policy.

Domain code only asks "may this actor do this here?" and raises
AuthorizationError on a no; role logic lives behind the gate.
"""

import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Iterable, Optional, Protocol, Set

import httpx

from school_attendance.core.exceptions import AuthorizationError, ExternalServiceError
from school_attendance.core.security import Actor

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    VERIFY = "attendance.verify"
    VERIFY_OVERRIDE = "attendance.verify_override"
    EXCUSE = "attendance.excuse"
    BULK_CREATE = "attendance.bulk_create"
    DELETE = "attendance.delete"
    RECALCULATE = "summary.recalculate"
    DISPATCH_ALERTS = "summary.dispatch_alerts"


@dataclass(frozen=True)
class AuthorizationScope:
    school_id: Optional[int] = None
    class_id: Optional[int] = None


class AuthorizationGate(Protocol):
    async def can_perform(
        self, actor: Actor, action: Capability, scope: AuthorizationScope
    ) -> bool: ...


class StaticAuthorizationGate:
    """Role -> capability grants, with a tenant check on the scope"""

    WILDCARD = "*"
    CROSS_SCHOOL_ROLE = "superadmin"

    def __init__(self, grants: Dict[str, Iterable[str]]):
        self.grants: Dict[str, Set[str]] = {
            role: set(actions) for role, actions in grants.items()
        }

    async def can_perform(
        self, actor: Actor, action: Capability, scope: AuthorizationScope
    ) -> bool:
        if (
            scope.school_id is not None
            and actor.school_id != scope.school_id
            and not actor.has_role(self.CROSS_SCHOOL_ROLE)
        ):
            return False

        action_value = Capability(action).value
        for role in actor.roles:
            granted = self.grants.get(role, set())
            if self.WILDCARD in granted or action_value in granted:
                return True
        return False


class HttpAuthorizationGate:
    """Asks an external policy service; fails closed on transport errors"""

    def __init__(self, base_url: str, timeout: float = 5.0, client: httpx.AsyncClient = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def can_perform(
        self, actor: Actor, action: Capability, scope: AuthorizationScope
    ) -> bool:
        payload = {
            "actor": {
                "id": actor.id,
                "school_id": actor.school_id,
                "roles": list(actor.roles),
            },
            "action": Capability(action).value,
            "scope": asdict(scope),
        }

        try:
            if self._client is not None:
                response = await self._client.post(
                    f"{self.base_url}/authorize", json=payload, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        f"{self.base_url}/authorize", json=payload, timeout=self.timeout
                    )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                f"Authorization service call failed: {str(e)}",
                extra={"action": payload["action"], "actor_id": actor.id},
            )
            raise ExternalServiceError("authorization", "Authorization service unavailable")

        return bool(response.json().get("allowed", False))


async def require_capability(
    gate: AuthorizationGate,
    actor: Actor,
    action: Capability,
    scope: AuthorizationScope,
) -> None:
    """Raise AuthorizationError unless the gate allows the action"""
    allowed = await gate.can_perform(actor, action, scope)
    if not allowed:
        logger.info(
            f"Capability denied: {Capability(action).value}",
            extra={
                "actor_id": actor.id,
                "action": Capability(action).value,
                "school_id": scope.school_id,
                "class_id": scope.class_id,
            },
        )
        raise AuthorizationError(
            f"Not allowed to perform '{Capability(action).value}'",
            details={
                "action": Capability(action).value,
                "school_id": scope.school_id,
                "class_id": scope.class_id,
            },
        )
