"""
Tests for bearer token verification and the JWT auth provider.

Run with: pytest Backend/tests/test_auth.py -v
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from conftest import new_id
from salon_access.auth import AuthEvent, AuthUser, JwtAuthProvider, decode_access_token
from salon_access.core.config import Settings
from salon_access.core.errors import AuthenticationError

SECRET = "test-secret-that-is-long-enough-for-hs256"


@pytest.fixture
def settings():
    return Settings(JWT_SECRET=SECRET)


def make_token(sub=None, expires_in=timedelta(hours=1), secret=SECRET, **claims):
    payload = {"aud": "authenticated", "exp": datetime.now(timezone.utc) + expires_in, **claims}
    if sub is not None:
        payload["sub"] = sub
    return jwt.encode(payload, secret, algorithm="HS256")


class TestDecodeAccessToken:
    def test_valid_token(self, settings):
        user_id = new_id()
        token = make_token(
            user_id,
            email="ana@example.com",
            user_metadata={"full_name": "Ana Lima", "requires_password_change": True},
        )

        session = decode_access_token(token, settings)

        assert session.user.id == user_id
        assert session.user.email == "ana@example.com"
        assert session.user.display_name() == "Ana Lima"
        assert session.user.requires_password_change is True
        assert session.expires_at.tzinfo is not None

    def test_expired_token(self, settings):
        with pytest.raises(AuthenticationError, match="expired"):
            decode_access_token(make_token(new_id(), expires_in=timedelta(minutes=-5)), settings)

    def test_wrong_signature(self, settings):
        with pytest.raises(AuthenticationError):
            decode_access_token(make_token(new_id(), secret="another-secret-that-is-long-enough"), settings)

    def test_wrong_audience(self, settings):
        with pytest.raises(AuthenticationError):
            decode_access_token(make_token(new_id(), aud="anon"), settings)

    def test_missing_sub(self, settings):
        with pytest.raises(AuthenticationError):
            decode_access_token(make_token(None), settings)

    def test_secret_not_configured(self):
        with pytest.raises(AuthenticationError) as exc:
            decode_access_token(make_token(new_id()), Settings(JWT_SECRET=""))
        assert exc.value.status_code == 500


class TestAuthUser:
    def test_display_name_fallbacks(self):
        assert AuthUser(id="u", email="sam@example.com").display_name() == "sam"
        assert AuthUser(id="u").display_name() == "User"

    def test_flags_require_true(self):
        user = AuthUser(id="u", user_metadata={"requires_password_change": "yes"})
        assert user.requires_password_change is False


class TestJwtAuthProvider:
    """Token changes are reported as auth events."""

    async def test_events(self, settings):
        provider = JwtAuthProvider(settings)
        events = []

        async def listener(event, session):
            events.append((event, session.user.id if session else None))

        unsubscribe = provider.on_auth_state_change(listener)
        user_a, user_b = new_id(), new_id()

        await provider.set_access_token(make_token(user_a))
        await provider.set_access_token(make_token(user_a, iat=1))
        await provider.set_access_token(make_token(user_b))
        await provider.sign_out()
        await provider.sign_out()

        assert events == [
            (AuthEvent.SIGNED_IN, user_a),
            (AuthEvent.TOKEN_REFRESHED, user_a),
            (AuthEvent.SIGNED_IN, user_b),
            (AuthEvent.SIGNED_OUT, None),
        ]
        assert await provider.get_session() is None

        unsubscribe()
        await provider.set_access_token(make_token(user_a))
        assert len(events) == 4

    async def test_invalid_token_keeps_previous_session(self, settings):
        provider = JwtAuthProvider(settings)
        user = new_id()
        await provider.set_access_token(make_token(user))

        with pytest.raises(AuthenticationError):
            await provider.set_access_token("garbage")

        assert provider.session.user.id == user
