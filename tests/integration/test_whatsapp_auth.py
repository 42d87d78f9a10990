"""
Magic link issuing and redemption, end to end over SQLite and the fake backend
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import jwt
import pytest
import uuid6
from sqlalchemy import select, update

from menu_session.domain.schemas.auth import MagicLinkRequest, MagicLinkSessionContext
from menu_session.domain.schemas.fingerprint import DeviceInfo, FingerprintResult
from menu_session.domain.schemas.session import SessionState
from menu_session.infrastructure.database.models import (
    EventTypeEnum,
    MagicLinkToken,
    SecurityAuditLog,
)
from menu_session.infrastructure.database.repositories import AuditLogRepository

from conftest import DEFAULT_CUSTOMER

PHONE = "(11) 98765-4321"
NORMALIZED_PHONE = "5511987654321"


def link_request(fingerprint: str, table_id: str = "t1", phone: str = PHONE) -> MagicLinkRequest:
    return MagicLinkRequest(
        phone=phone,
        store_id="store-1",
        fingerprint=fingerprint,
        session_context=MagicLinkSessionContext(table_id=table_id),
    )


def token_from(backend) -> str:
    link = backend.magic_links[-1]["link"]
    return parse_qs(urlsplit(link).query)["token"][0]


async def audit_events(session_factory, fingerprint: str) -> list[SecurityAuditLog]:
    async with session_factory() as db:
        return await AuditLogRepository(db).list_by_fingerprint(fingerprint)


def serialized(session_factory):
    """One database session at a time; the in-memory SQLite pool shares a single connection."""
    lock = asyncio.Lock()

    @asynccontextmanager
    async def factory():
        async with lock:
            async with session_factory() as db:
                yield db

    return factory


@pytest.fixture
def auth(container):
    return container.whatsapp_auth


class TestRequestMagicLink:
    @pytest.mark.asyncio
    async def test_link_is_sent_to_normalized_phone(self, auth, backend, settings, device):
        response = await auth.request_magic_link(link_request(device), ip_address="10.0.0.1")

        assert response.success is True
        assert response.message == "Link de acesso enviado via WhatsApp"
        assert response.rate_limit_remaining == 1
        sent = backend.magic_links[-1]
        assert sent["phone"] == NORMALIZED_PHONE
        assert sent["tenant_id"] == "store-1"
        assert sent["expires_in_minutes"] == settings.MAGIC_LINK_EXPIRE_MINUTES
        assert sent["link"].startswith("https://menu.test/auth/whatsapp/verify?token=")

    @pytest.mark.asyncio
    async def test_only_the_token_hash_is_stored(self, auth, backend, session_factory, device):
        await auth.request_magic_link(link_request(device))
        token = token_from(backend)

        async with session_factory() as db:
            row = (await db.execute(select(MagicLinkToken))).scalar_one()

        assert row.token_hash != token
        assert len(row.token_hash) == 64
        assert row.phone == NORMALIZED_PHONE
        assert row.table_id == "t1"
        assert row.is_delivery is False

    @pytest.mark.asyncio
    async def test_invalid_phone(self, auth, backend, device):
        response = await auth.request_magic_link(link_request(device, phone="(20) 98765-4321"))

        assert response.success is False
        assert response.message == "DDD 20 inválido"
        assert backend.magic_links == []

    @pytest.mark.asyncio
    async def test_blocked_device(self, auth, container, backend, device):
        await container.fingerprint_store.record_seen(
            FingerprintResult(
                hash=device,
                device_info=DeviceInfo(
                    user_agent="Safari",
                    screen_resolution="390x844",
                    time_zone="America/Sao_Paulo",
                    language="pt-BR",
                    canvas_hash="c" * 64,
                    webgl_hash="d" * 64,
                ),
                confidence=1.0,
            )
        )
        await container.fingerprint_store.block(device, "manual")

        response = await auth.request_magic_link(link_request(device))

        assert response.success is False
        assert response.message == "Dispositivo bloqueado por atividade suspeita"
        assert backend.magic_links == []

    @pytest.mark.asyncio
    async def test_malformed_fingerprint(self, auth):
        response = await auth.request_magic_link(link_request("zz-not-hex"))

        assert response.success is False
        assert response.message == "Fingerprint do dispositivo inválido"

    @pytest.mark.asyncio
    async def test_per_device_hourly_quota(self, auth, session_factory, device):
        first = await auth.request_magic_link(link_request(device))
        second = await auth.request_magic_link(link_request(device))
        third = await auth.request_magic_link(link_request(device))

        assert (first.success, second.success, third.success) == (True, True, False)
        assert second.rate_limit_remaining == 0
        assert third.message == "Limite de tentativas por hora excedido"
        assert third.rate_limit_remaining == 0
        events = await audit_events(session_factory, device)
        assert EventTypeEnum.MAGIC_LINK_RATE_LIMITED in {e.event_type for e in events}

    @pytest.mark.asyncio
    async def test_per_phone_daily_quota_spans_devices(self, auth, make_fingerprint):
        responses = [
            await auth.request_magic_link(link_request(make_fingerprint(f"device-{i}")))
            for i in range(4)
        ]

        assert [r.success for r in responses] == [True, True, True, False]
        assert responses[-1].message == "Limite diário de tentativas excedido para este telefone"
        assert responses[-1].rate_limit_remaining == 0

    @pytest.mark.asyncio
    async def test_failed_delivery_still_counts(self, auth, backend, device):
        backend.failing["POST /whatsapp/magic-link"] = 500

        response = await auth.request_magic_link(link_request(device))

        assert response.success is False
        assert response.message == "Erro ao enviar mensagem via WhatsApp"
        assert response.rate_limit_remaining == 1
        allowed, remaining, _ = await auth.check_rate_limit(NORMALIZED_PHONE, device)
        assert (allowed, remaining) == (True, 1)

    @pytest.mark.asyncio
    async def test_concurrent_requests_respect_the_phone_quota(
        self, auth, backend, session_factory, make_fingerprint
    ):
        auth.session_factory = serialized(session_factory)

        responses = await asyncio.gather(
            *(
                auth.request_magic_link(link_request(make_fingerprint(f"device-{i}")))
                for i in range(6)
            )
        )

        assert sum(r.success for r in responses) == 3
        assert len(backend.magic_links) == 3
        assert await auth.rate_limiter.count(f"magic_link:phone:{NORMALIZED_PHONE}", 24 * 3600) == 3

    @pytest.mark.asyncio
    async def test_device_refusal_gives_back_the_phone_slot(self, auth, device):
        for _ in range(3):
            await auth.request_magic_link(link_request(device))

        allowed, remaining, _ = await auth.check_rate_limit(NORMALIZED_PHONE, "e" * 64)

        assert (allowed, remaining) == (True, 1)


class TestRedeemMagicLink:
    @pytest.mark.asyncio
    async def test_opens_session_in_the_requested_context(self, auth, backend, device):
        await auth.request_magic_link(link_request(device, table_id="t1"))

        result = await auth.create_session_from_token(token_from(backend), fingerprint=device)

        assert result.success is True
        assert result.session.store_id == "store-1"
        assert result.session.context.type == "table"
        assert result.session.context.table_id == "t1"
        assert result.session.fingerprint == device
        assert result.customer_id is None
        assert result.session.state == SessionState.ACTIVE_GUEST

    @pytest.mark.asyncio
    async def test_delivery_context(self, auth, backend, device):
        await auth.request_magic_link(link_request(device, table_id=None))

        result = await auth.create_session_from_token(token_from(backend), fingerprint=device)

        assert result.session.context.type == "delivery"

    @pytest.mark.asyncio
    async def test_table_context_without_delivery_flag(self, auth, backend, device):
        request = MagicLinkRequest.model_validate(
            {
                "phone": PHONE,
                "storeId": "store-1",
                "fingerprint": device,
                "sessionContext": {"tableId": "t1"},
            }
        )
        await auth.request_magic_link(request)

        result = await auth.create_session_from_token(token_from(backend), fingerprint=device)

        assert result.session.context.type == "table"
        assert result.session.context.table_id == "t1"

    @pytest.mark.asyncio
    async def test_known_customer_is_attached(self, auth, backend, device):
        backend.customers_by_phone[NORMALIZED_PHONE] = DEFAULT_CUSTOMER
        await auth.request_magic_link(link_request(device))

        result = await auth.create_session_from_token(token_from(backend), fingerprint=device)

        assert result.customer_id == "cust-42"
        assert result.session.is_authenticated is True
        assert result.session.state == SessionState.ACTIVE_AUTHENTICATED

    @pytest.mark.asyncio
    async def test_token_is_single_use(self, auth, backend, device):
        await auth.request_magic_link(link_request(device))
        token = token_from(backend)

        first = await auth.create_session_from_token(token, fingerprint=device)
        second = await auth.create_session_from_token(token, fingerprint=device)

        assert first.success is True
        assert second.success is False
        assert second.message == "Token já foi utilizado"

    @pytest.mark.asyncio
    async def test_expired_token_is_burned(self, auth, backend, session_factory, device):
        await auth.request_magic_link(link_request(device))
        token = token_from(backend)
        async with session_factory() as db:
            await db.execute(
                update(MagicLinkToken).values(
                    expires_at=datetime.now(timezone.utc) - timedelta(minutes=1)
                )
            )

        first = await auth.create_session_from_token(token, fingerprint=device)
        second = await auth.validate_magic_link_token(token, fingerprint=device)

        assert first.message == "Token expirado"
        assert second.reason == "Token já foi utilizado"

    @pytest.mark.asyncio
    async def test_forged_and_malformed_tokens(self, auth, device):
        forged = jwt.encode(
            {"jti": str(uuid6.uuid7()), "type": "magic_link"},
            "attacker-controlled-signing-key-000000",
            algorithm="HS256",
        )

        for token in (forged, "garbage"):
            result = await auth.create_session_from_token(token, fingerprint=device)
            assert result.success is False
            assert result.message == "Token inválido ou malformado"

    @pytest.mark.asyncio
    async def test_signed_token_without_row(self, auth, container, device):
        token = container.jwt_manager.create_magic_link_token(
            token_id=str(uuid6.uuid7()),
            phone=NORMALIZED_PHONE,
            store_id="store-1",
            fingerprint=device,
            session_context={},
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=15),
        )

        result = await auth.validate_magic_link_token(token, fingerprint=device)

        assert result.is_valid is False
        assert result.reason == "Token não encontrado"

    @pytest.mark.asyncio
    async def test_other_device_is_flagged_but_allowed_by_default(
        self, auth, backend, session_factory, device, make_fingerprint
    ):
        await auth.request_magic_link(link_request(device))
        other = make_fingerprint("other-phone")

        result = await auth.create_session_from_token(token_from(backend), fingerprint=other)

        assert result.success is True
        # The session belongs to the device that asked for the link
        assert result.session.fingerprint == device
        used = [
            e for e in await audit_events(session_factory, other)
            if e.event_type == EventTypeEnum.MAGIC_LINK_USED
        ]
        assert used[0].event_metadata["fingerprint_mismatch"] is True

    @pytest.mark.asyncio
    async def test_other_device_is_refused_under_reject_policy(
        self, auth, backend, device, make_fingerprint
    ):
        auth.fingerprint_policy = "reject"
        await auth.request_magic_link(link_request(device))
        token = token_from(backend)

        refused = await auth.create_session_from_token(token, fingerprint=make_fingerprint("other"))
        accepted = await auth.create_session_from_token(token, fingerprint=device)

        assert refused.success is False
        assert refused.message == "Link aberto em um dispositivo diferente do solicitante"
        assert accepted.success is True

    @pytest.mark.asyncio
    async def test_session_refusal_after_consumption(self, auth, backend, device):
        await auth.request_magic_link(link_request(device))
        backend.store_status["store-1"] = {"isOpen": False, "status": "closed"}

        result = await auth.create_session_from_token(token_from(backend), fingerprint=device)
        retry = await auth.create_session_from_token(token_from(backend), fingerprint=device)

        assert result.success is False
        assert result.message == "Loja fechada no momento"
        assert retry.message == "Token já foi utilizado"

    @pytest.mark.asyncio
    async def test_cleanup_expired_tokens(self, auth, device):
        await auth.request_magic_link(link_request(device))

        assert await auth.cleanup_expired_tokens() == 0
        assert await auth.cleanup_expired_tokens(datetime.now(timezone.utc) + timedelta(hours=1)) == 1
