import jwt
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from school_attendance.core.exceptions import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """The caller on whose behalf an operation runs"""

    id: int
    school_id: Optional[int] = None
    roles: Tuple[str, ...] = field(default_factory=tuple)

    def has_role(self, role: str) -> bool:
        return role in self.roles


class JWTManager:
    """Verifies access tokens issued by the identity provider"""

    def __init__(self, secret_key: Optional[str], algorithm: str = "HS256"):
        self.secret_key = secret_key
        self.algorithm = algorithm

    def create_access_token(
        self,
        actor_id: int,
        school_id: Optional[int] = None,
        roles: Iterable[str] = (),
        expires_minutes: int = 60,
        extra_data: Dict[str, Any] = None,
    ) -> str:
        """
        Mint a token; used by tooling and tests that stand in for the IdP
        """
        if not self.secret_key:
            raise ConfigurationError("JWT_SECRET_KEY")

        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(actor_id),
            "school_id": school_id,
            "roles": list(roles),
            "exp": now + timedelta(minutes=expires_minutes),
            "iat": now,
            "type": "access_token",
        }
        if extra_data:
            payload.update(extra_data)

        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def decode_token(self, token: str) -> Dict[str, Any]:
        """
        Decode and verify a token

        Raises:
            AuthenticationError: invalid, expired or wrong type
        """
        if not self.secret_key:
            raise ConfigurationError("JWT_SECRET_KEY")

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            logger.warning("JWT token has expired")
            raise AuthenticationError("Token has expired")
        except jwt.InvalidTokenError:
            logger.warning("Invalid JWT token provided")
            raise AuthenticationError("Invalid token")

        if payload.get("type") != "access_token":
            raise AuthenticationError("Invalid token type")

        return payload

    def actor_from_token(self, token: str) -> Actor:
        payload = self.decode_token(token)

        try:
            actor_id = int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise AuthenticationError("Token subject is missing or malformed")

        school_id = payload.get("school_id")
        return Actor(
            id=actor_id,
            school_id=int(school_id) if school_id is not None else None,
            roles=tuple(payload.get("roles") or ()),
        )
