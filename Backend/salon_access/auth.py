"""
Authentication provider boundary.

The engine keys everything off the session handed over by an auth
provider. ``AuthProvider`` is the contract; ``JwtAuthProvider`` verifies
HS256 access tokens issued by the hosted auth platform (``sub`` is the
user id, ``user_metadata`` carries onboarding flags).

USAGE:
    provider = JwtAuthProvider(settings)
    unsubscribe = provider.on_auth_state_change(machine.handle_auth_event)
    await provider.set_access_token(token)   # fires SIGNED_IN
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

import jwt

from .core.config import Settings
from .core.errors import AuthenticationError

logger = logging.getLogger(__name__)


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: Optional[str] = None
    user_metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def requires_password_change(self) -> bool:
        return self.user_metadata.get("requires_password_change") is True

    @property
    def requires_password_reset(self) -> bool:
        return self.user_metadata.get("requires_password_reset") is True

    def display_name(self) -> str:
        full_name = self.user_metadata.get("full_name")
        if full_name:
            return str(full_name)
        if self.email:
            return self.email.split("@")[0]
        return "User"


@dataclass(frozen=True)
class AuthSession:
    access_token: str
    user: AuthUser
    expires_at: Optional[datetime] = None


AuthListener = Callable[[AuthEvent, Optional[AuthSession]], Awaitable[None]]


class AuthProvider(Protocol):
    async def get_session(self) -> Optional[AuthSession]:
        ...

    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        ...

    async def sign_out(self) -> None:
        ...


def decode_access_token(token: str, settings: Settings) -> AuthSession:
    """
    Verify an access token and build the session it describes.

    Raises:
        AuthenticationError: bad signature, expired, wrong audience or no ``sub``
    """
    if not settings.jwt_secret:
        raise AuthenticationError("JWT_SECRET is not configured", status_code=500)
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience or None,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired. Please sign in again.")
    except jwt.InvalidTokenError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise AuthenticationError("Invalid or expired token. Please sign in again.")

    user_id = claims.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token: missing user identifier")

    metadata = claims.get("user_metadata")
    user = AuthUser(
        id=str(user_id),
        email=claims.get("email"),
        user_metadata=metadata if isinstance(metadata, dict) else {},
    )
    expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    return AuthSession(access_token=token, user=user, expires_at=expires_at)


class JwtAuthProvider:
    """AuthProvider holding one bearer-token session."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._session: Optional[AuthSession] = None
        self._listeners: list[AuthListener] = []

    @property
    def session(self) -> Optional[AuthSession]:
        return self._session

    async def get_session(self) -> Optional[AuthSession]:
        return self._session

    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def set_access_token(self, token: str) -> AuthSession:
        """Verify ``token`` and notify listeners (SIGNED_IN or TOKEN_REFRESHED)."""
        session = decode_access_token(token, self.settings)
        previous = self._session
        self._session = session
        if previous is not None and previous.user.id == session.user.id:
            await self._notify(AuthEvent.TOKEN_REFRESHED, session)
        else:
            await self._notify(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        if self._session is None:
            return
        self._session = None
        await self._notify(AuthEvent.SIGNED_OUT, None)

    async def _notify(self, event: AuthEvent, session: Optional[AuthSession]) -> None:
        logger.debug(f"Auth state changed: {event.value} {session.user.id if session else None}")
        for listener in list(self._listeners):
            await listener(event, session)
