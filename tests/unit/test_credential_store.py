"""
Credential store unit tests
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import jwt
import pytest

from menu_session.application.services.credential_store import CredentialStore
from menu_session.application.services.heartbeat import TaskScheduler
from menu_session.core.exceptions import BackendRequestError
from menu_session.core.security import EncryptionManager
from menu_session.domain.schemas.auth import CustomerUser

from conftest import DEFAULT_CUSTOMER


@pytest.fixture
def customer_api():
    return AsyncMock()


@pytest.fixture
def credentials(storage, settings, customer_api, clock):
    return CredentialStore(
        storage, EncryptionManager(settings), customer_api, TaskScheduler(), settings, clock=clock
    )


@pytest.fixture
def user() -> CustomerUser:
    return CustomerUser.model_validate(DEFAULT_CUSTOMER)


def backend_jwt(clock, lifetime: timedelta) -> str:
    """A bearer token signed with a key this service never sees."""
    return jwt.encode(
        {"sub": "42", "exp": int((clock.now + lifetime).timestamp())},
        "backend-only-signing-key-never-shared-here",
        algorithm="HS256",
    )


class TestIssue:
    def test_opaque_token_gets_default_lifetime(self, credentials, user, clock):
        stored = credentials.issue("opaque-token-1", user)

        assert stored.credential.kind == "opaque"
        assert stored.expires_at == clock.now + timedelta(hours=24)

    def test_backend_expiry_overrides_default(self, credentials, user, clock):
        stored = credentials.issue("opaque-token-1", user, expires_at=clock.now + timedelta(hours=2))

        assert stored.expires_at == clock.now + timedelta(hours=2)

    def test_jwt_expiry_comes_from_claims(self, credentials, user, clock):
        token = backend_jwt(clock, timedelta(hours=2))

        stored = credentials.issue(token, user)

        assert stored.credential.kind == "jwt"
        assert stored.credential.claims["sub"] == "42"
        assert stored.expires_at == clock.now + timedelta(hours=2)

    def test_dotted_garbage_is_opaque(self, credentials, user):
        stored = credentials.issue("not.a.jwt", user)

        assert stored.credential.kind == "opaque"

    def test_needs_refresh_inside_window(self, credentials, user, clock):
        soon = credentials.issue("t", user, expires_at=clock.now + timedelta(minutes=20))
        later = credentials.issue("t", user, expires_at=clock.now + timedelta(hours=2))

        assert credentials.needs_refresh(soon) is True
        assert credentials.needs_refresh(later) is False


class TestPersistence:
    def test_encoded_credential_is_not_plaintext(self, credentials, user):
        value = credentials.encode(credentials.issue("opaque-token-1", user))

        assert "opaque-token-1" not in value
        assert credentials.decode(value).token == "opaque-token-1"

    def test_unreadable_values_decode_to_none(self, credentials):
        assert credentials.decode("garbage") is None
        assert credentials.decode("") is None
        assert credentials.decode(None) is None

    def test_cookie_parameters(self, credentials, user, settings):
        cookie = credentials.cookie_for(credentials.issue("opaque-token-1", user))

        assert cookie.key == settings.CREDENTIAL_COOKIE_NAME
        assert cookie.httponly is True
        assert cookie.samesite == "strict"
        assert cookie.max_age == 30 * 24 * 3600

    @pytest.mark.asyncio
    async def test_storage_copy_is_used_without_cookie(self, credentials, user, device):
        await credentials.save(device, credentials.issue("opaque-token-1", user))

        loaded = await credentials.load(device)

        assert loaded.token == "opaque-token-1"

    @pytest.mark.asyncio
    async def test_cookie_wins_over_storage(self, credentials, user, device):
        await credentials.save(device, credentials.issue("stored-token", user))
        cookie_value = credentials.encode(credentials.issue("cookie-token", user))

        loaded = await credentials.load(device, cookie_value)

        assert loaded.token == "cookie-token"

    @pytest.mark.asyncio
    async def test_expired_cookie_falls_back_to_refreshed_storage(
        self, credentials, customer_api, user, device, clock
    ):
        customer_api.refresh.return_value = {"token": "new-token", "user": DEFAULT_CUSTOMER}
        original = credentials.issue("old-token", user, expires_at=clock.now + timedelta(minutes=20))
        old_cookie = (await credentials.save(device, original)).value
        await credentials.refresh(device, original)
        clock.advance(minutes=25)

        loaded = await credentials.load(device, old_cookie)

        assert loaded.token == "new-token"
        assert await credentials.storage.get(f"credential:{device}") is not None

    @pytest.mark.asyncio
    async def test_newer_storage_copy_wins_over_cookie(self, credentials, user, device, clock):
        cookie_value = credentials.encode(
            credentials.issue("cookie-token", user, expires_at=clock.now + timedelta(minutes=20))
        )
        await credentials.save(
            device, credentials.issue("stored-token", user, expires_at=clock.now + timedelta(hours=2))
        )

        loaded = await credentials.load(device, cookie_value)

        assert loaded.token == "stored-token"

    @pytest.mark.asyncio
    async def test_expired_credential_is_dropped(self, credentials, user, device, clock):
        await credentials.save(
            device, credentials.issue("opaque-token-1", user, expires_at=clock.now + timedelta(minutes=5))
        )
        clock.advance(minutes=6)

        assert await credentials.load(device) is None
        assert await credentials.storage.get(f"credential:{device}") is None

    @pytest.mark.asyncio
    async def test_clear(self, credentials, user, device):
        await credentials.save(device, credentials.issue("opaque-token-1", user))

        await credentials.clear(device)

        assert await credentials.load(device) is None


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_replaces_the_stored_credential(
        self, credentials, customer_api, user, device
    ):
        customer_api.refresh.return_value = {"token": "refreshed-token", "user": DEFAULT_CUSTOMER}
        stored = credentials.issue("opaque-token-1", user)

        refreshed = await credentials.refresh(device, stored)

        customer_api.refresh.assert_awaited_once_with("opaque-token-1")
        assert refreshed.token == "refreshed-token"
        assert (await credentials.load(device)).token == "refreshed-token"

    @pytest.mark.asyncio
    async def test_refused_refresh_returns_none(self, credentials, customer_api, user, device):
        customer_api.refresh.side_effect = BackendRequestError("Token inválido", 401)

        assert await credentials.refresh(device, credentials.issue("opaque-token-1", user)) is None

    @pytest.mark.asyncio
    async def test_refresh_without_token_returns_none(self, credentials, customer_api, user, device):
        customer_api.refresh.return_value = {}

        assert await credentials.refresh(device, credentials.issue("opaque-token-1", user)) is None

    @pytest.mark.asyncio
    async def test_schedule_and_cancel_refresh(self, credentials, device):
        await credentials.schedule_refresh(device)
        assert credentials.is_refresh_scheduled(device) is True

        await credentials.cancel_refresh(device)
        assert credentials.is_refresh_scheduled(device) is False
