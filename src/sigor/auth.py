"""Session token validation and user context.

Validates the HS256 access tokens issued by the hosted auth service,
extracts user identity and roles, and exposes the authenticated user of
the current request through a context variable.

Mutators that write on behalf of a user call :func:`get_current_user`
and fail fast when nobody is authenticated.
"""

import logging
from contextvars import ContextVar
from dataclasses import dataclass, field

import jwt

from sigor.core.constants import DISPATCHER_ROLES, OPERATIONAL_ROLES

logger = logging.getLogger(__name__)

TOKEN_AUDIENCE = "authenticated"


@dataclass(frozen=True)
class UserContext:
    """Authenticated user extracted from the session token."""

    user_id: str
    email: str = ""
    name: str = ""
    roles: frozenset[str] = field(default_factory=frozenset)
    organization_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles

    @property
    def is_dispatcher(self) -> bool:
        return bool(self.roles & DISPATCHER_ROLES)

    @property
    def is_operational(self) -> bool:
        """Crew roles that ride vehicles (police officer, medical team, firefighter)."""
        return bool(self.roles & OPERATIONAL_ROLES)

    @property
    def is_observer(self) -> bool:
        return "observer" in self.roles


# Context variable holding the authenticated user for the current request
_current_user: ContextVar[UserContext | None] = ContextVar("current_user", default=None)


def get_current_user() -> UserContext:
    """Get the authenticated user for the current request.

    Raises:
        RuntimeError: If no user is authenticated in the current context.
    """
    user = _current_user.get()
    if user is not None:
        return user

    raise RuntimeError("Not authenticated")


def set_current_user(user: UserContext | None) -> None:
    """Set the authenticated user for the current request."""
    _current_user.set(user)


class TokenValidator:
    """Validates session JWTs signed with the backend's shared secret."""

    def __init__(self, secret: str, audience: str = TOKEN_AUDIENCE) -> None:
        """Initialize validator.

        Args:
            secret: HS256 signing secret
            audience: Expected ``aud`` claim
        """
        self.secret = secret
        self.audience = audience

    def validate_token(self, token: str) -> UserContext:
        """Validate a Bearer token and return the user context.

        Args:
            token: Raw JWT access token (without "Bearer " prefix)

        Returns:
            UserContext with user identity and roles

        Raises:
            jwt.InvalidTokenError: If the token is invalid
        """
        payload = jwt.decode(
            token,
            self.secret,
            algorithms=["HS256"],
            audience=self.audience,
        )

        user_meta = payload.get("user_metadata") or {}
        app_meta = payload.get("app_metadata") or {}
        email = (payload.get("email") or "").lower()

        return UserContext(
            user_id=payload["sub"],
            email=email,
            name=user_meta.get("full_name") or (email.split("@")[0] if email else "Unknown"),
            roles=frozenset(app_meta.get("roles", [])),
            organization_id=app_meta.get("organization_id"),
        )
