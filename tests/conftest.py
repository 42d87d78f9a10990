"""
Pytest configuration and shared fixtures
"""
import json
import os
import re
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

# Settings are read at import time, so the environment goes first
os.environ.update(
    {
        "AWS_SSM_ENABLED": "false",
        "ENVIRONMENT": "test",
        "JWT_SECRET": "test-magic-link-secret-with-enough-entropy",
        "FERNET_KEY": "YWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWE=",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "BACKEND_API_URL": "http://backend.test/api/v1",
        "BACKEND_RETRY_BASE_DELAY_SECONDS": "0",
        "RATE_LIMIT_ENABLED": "false",
        "PUBLIC_APP_URL": "https://menu.test",
        "ADMIN_API_TOKEN": "test-admin-token",
    }
)

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from menu_session.container import ServiceContainer
from menu_session.core.config import Settings, get_settings
from menu_session.core.security import sha256_hex
from menu_session.domain.schemas.fingerprint import CanvasProbe, DeviceSignals, WebGLProbe
from menu_session.infrastructure.database.connection import (
    SessionContextFactory,
    session_context_factory,
)
from menu_session.infrastructure.database.models import Base
from menu_session.infrastructure.storage.kv_store import KeyValueStorage

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
API_PREFIX = "/api/v1"

DEFAULT_CUSTOMER = {
    "id": 42,
    "uuid": "cust-42",
    "name": "Maria Silva",
    "phone": "5511987654321",
}


class FakeClock:
    """Controllable wall clock (call it) and monotonic clock (.monotonic)."""

    def __init__(self, start: datetime = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)):
        self.now = start
        self.seconds = 1_000_000.0

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.seconds

    def advance(self, **delta) -> None:
        step = timedelta(**delta)
        self.now += step
        self.seconds += step.total_seconds()


def _ok(data=None) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "message": "ok", "data": data})


def _error(status_code: int, message: str, data=None) -> httpx.Response:
    return httpx.Response(
        status_code, json={"success": False, "message": message, "data": data}
    )


class FakeOrderingBackend:
    """
    In-memory stand-in for the ordering backend REST API, served through
    httpx.MockTransport.
    """

    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.store_status: dict[str, dict] = {}
        self.table_status: dict[str, dict] = {}
        self.store_settings: dict[str, dict] = {}
        self.customers_by_phone: dict[str, dict] = {}
        self.customers_by_token: dict[str, dict] = {}
        self.valid_code = "123456"
        self.issued_token = "opaque-token-1"
        self.code_attempts_remaining = 3
        self.locked = False
        self.magic_links: list[dict] = []
        self.code_requests: list[dict] = []
        self.offline = False
        # "METHOD /path-prefix" -> status code
        self.failing: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix(API_PREFIX)
        method = request.method
        self.calls.append((method, path))

        if self.offline:
            raise httpx.ConnectError("backend offline", request=request)
        for route, status_code in self.failing.items():
            fail_method, prefix = route.split(" ", 1)
            if method == fail_method and path.startswith(prefix):
                return _error(status_code, "Falha simulada")

        body = json.loads(request.content) if request.content else {}

        if method == "POST" and path == "/sessions":
            self.sessions[body["id"]] = body
            return _ok(body)
        if method == "GET" and path == "/sessions":
            store_id = request.url.params.get("store_id")
            return _ok([s for s in self.sessions.values() if s["storeId"] == store_id])

        match = re.fullmatch(r"/sessions/([^/]+)(/\w+)?", path)
        if match:
            return self._session_route(method, match.group(1), match.group(2), body)

        match = re.fullmatch(r"/tenant/([^/]+)/(status|settings)", path)
        if match and method == "GET":
            store_id, kind = match.groups()
            if kind == "status":
                return _ok(self.store_status.get(store_id, {"isOpen": True, "status": "open"}))
            return _ok(self.store_settings.get(store_id, {"allowQuickRegistration": True}))

        match = re.fullmatch(r"/tables/([^/]+)/status", path)
        if match and method == "GET":
            return _ok(self.table_status.get(match.group(1), {"isActive": True, "currentSessions": 0}))

        if path.startswith("/auth/"):
            return self._auth_route(method, path, request)

        match = re.fullmatch(r"/customers/by-phone/(\d+)", path)
        if match and method == "GET":
            customer = self.customers_by_phone.get(match.group(1))
            return _ok(customer) if customer else _error(404, "Cliente não encontrado")

        if path.startswith("/whatsapp/"):
            return self._whatsapp_route(path, body)

        return _error(404, f"Rota desconhecida {method} {path}")

    def _session_route(self, method: str, session_id: str, action, body: dict) -> httpx.Response:
        session = self.sessions.get(session_id)
        if session is None:
            return _error(404, "Sessão não encontrada")
        if action == "/validate" and method == "GET":
            return _ok({"isValid": True, "session": session})
        if action == "/customer" and method == "POST":
            session.update(customerId=body["customerId"], isAuthenticated=True)
            return _ok({})
        if action == "/activity" and method == "POST":
            return _ok({})
        if action is None and method == "PATCH":
            session.update(body)
            return _ok({})
        if action is None and method == "DELETE":
            self.sessions.pop(session_id)
            return _ok({})
        return _error(405, "Método não suportado")

    def _auth_route(self, method: str, path: str, request: httpx.Request) -> httpx.Response:
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        user = self.customers_by_token.get(token)
        if path == "/auth/me" and method == "GET":
            return _ok({"user": user}) if user else _error(401, "Não autenticado")
        if path == "/auth/logout" and method == "POST":
            return _ok({})
        if path == "/auth/refresh" and method == "POST":
            if not user:
                return _error(401, "Token inválido")
            self.customers_by_token["refreshed-token"] = user
            return _ok({"token": "refreshed-token", "user": user})
        return _error(404, "Rota desconhecida")

    def _whatsapp_route(self, path: str, body: dict) -> httpx.Response:
        if path == "/whatsapp/magic-link":
            self.magic_links.append(body)
            return _ok({})
        if path == "/whatsapp/request-code":
            if self.locked:
                return _error(429, "Muitas tentativas", {"locked": True})
            self.code_requests.append(body)
            return _ok({"message": "Código enviado"})
        if path == "/whatsapp/verify-code":
            if self.locked:
                return _error(429, "Conta bloqueada", {"locked": True})
            if body["code"] == self.valid_code:
                user = self.customers_by_phone.get(body["phone"], DEFAULT_CUSTOMER)
                self.customers_by_token[self.issued_token] = user
                return _ok({"token": self.issued_token, "user": user})
            self.code_attempts_remaining -= 1
            if self.code_attempts_remaining <= 0:
                self.locked = True
                return _error(429, "Conta bloqueada", {"locked": True})
            return _error(
                422, "Código inválido", {"attempts_remaining": self.code_attempts_remaining}
            )
        return _error(404, "Rota desconhecida")


# ==========================================
# FIXTURES
# ==========================================


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> KeyValueStorage:
    """Key-value storage without Redis: everything lives in memory."""
    return KeyValueStorage(redis_factory=None, prefix="test")


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> SessionContextFactory:
    return session_context_factory(
        async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    )


@pytest.fixture
def backend() -> FakeOrderingBackend:
    return FakeOrderingBackend()


@pytest_asyncio.fixture
async def container(
    settings: Settings,
    session_factory: SessionContextFactory,
    backend: FakeOrderingBackend,
) -> AsyncGenerator[ServiceContainer, None]:
    """Full service graph over memory storage, SQLite and the fake backend."""
    container = ServiceContainer(
        settings,
        redis_factory=None,
        session_factory=session_factory,
        backend_transport=httpx.MockTransport(backend.handle),
    )
    yield container
    await container.shutdown()


@pytest.fixture
def signals() -> DeviceSignals:
    """A phone browser with working canvas and WebGL."""
    return DeviceSignals(
        user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Safari/604.1",
        language="pt-BR",
        screen_width=390,
        screen_height=844,
        color_depth=24,
        pixel_ratio=3,
        time_zone="America/Sao_Paulo",
        hardware_concurrency=6,
        device_memory=4,
        canvas=CanvasProbe(data_url="data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAA"),
        webgl=WebGLProbe(
            vendor="Apple Inc.",
            renderer="Apple GPU",
            version="WebGL 1.0",
            shading_language_version="WebGL GLSL ES 1.0",
            max_texture_size=16384,
        ),
    )


@pytest.fixture
def device() -> str:
    """A well-formed fingerprint hash."""
    return sha256_hex("device-under-test")


def fingerprint_for(name: str) -> str:
    return sha256_hex(name)


@pytest.fixture
def make_fingerprint():
    return fingerprint_for
