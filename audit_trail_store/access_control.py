"""
Actor resolution for the audit trail.

The audit trail never authenticates anyone itself. It consumes two
collaborators: an ActorResolver that turns a bearer token into an actor id,
and a UserDirectory that turns actor ids into display identities for the
recycle bin and history views.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Union

import jwt

from .audit_trail.models import ActorIdentity
from .config import AuditTrailConfig
from .exceptions import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)


class ActorResolver(Protocol):
    """Resolves a bearer token to the id of the acting principal."""

    def resolve(self, token: str) -> str:
        """
        Resolve a token.

        Raises:
            AuthenticationError: If the token is missing, invalid or expired
        """
        ...


class UserDirectory(Protocol):
    """Looks up display identities for actor ids."""

    def lookup(self, actor_ids: Iterable[str]) -> Dict[str, ActorIdentity]:
        """Return identities for the ids it knows; unknown ids are omitted."""
        ...


class JWTActorResolver:
    """Resolve actors from HMAC/RSA signed JWTs; the actor id is ``sub``."""

    def __init__(
        self,
        secret: str,
        algorithms: Optional[List[str]] = None,
        audience: Optional[str] = None,
    ):
        if not secret:
            raise ConfigurationError("A JWT secret is required to verify tokens")
        self.secret = secret
        self.algorithms = algorithms or ["HS256"]
        self.audience = audience

    @classmethod
    def from_config(cls, config: AuditTrailConfig) -> "JWTActorResolver":
        """Build a resolver from configuration."""
        if not config.jwt_secret:
            raise ConfigurationError("jwt_secret is not configured")
        return cls(config.jwt_secret, algorithms=[config.jwt_algorithm])

    def resolve(self, token: str) -> str:
        if not token:
            raise AuthenticationError("No token provided")

        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=self.algorithms,
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired")
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected bearer token: {e}")
            raise AuthenticationError("Invalid token")

        subject = claims.get("sub")
        if subject is None or not str(subject).strip():
            raise AuthenticationError("Token has no subject")
        return str(subject)


class StaticUserDirectory:
    """In-memory user directory, keyed by actor id."""

    def __init__(
        self,
        users: Optional[Mapping[str, Union[ActorIdentity, Mapping[str, str]]]] = None,
    ):
        self._users: Dict[str, ActorIdentity] = {}
        for actor_id, user in (users or {}).items():
            self.add(actor_id, user)

    def add(
        self, actor_id: str, user: Union[ActorIdentity, Mapping[str, str]]
    ) -> None:
        """Register or replace a user."""
        if not isinstance(user, ActorIdentity):
            data = dict(user)
            data["id"] = str(actor_id)
            user = ActorIdentity(**data)
        self._users[str(actor_id)] = user

    def lookup(self, actor_ids: Iterable[str]) -> Dict[str, ActorIdentity]:
        return {
            actor_id: self._users[actor_id]
            for actor_id in set(actor_ids)
            if actor_id in self._users
        }


class NullUserDirectory:
    """Directory that knows nobody; identities are simply left unresolved."""

    def lookup(self, actor_ids: Iterable[str]) -> Dict[str, ActorIdentity]:
        return {}
