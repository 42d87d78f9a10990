"""
Session API Client
Server-side session registry of the ordering backend.
"""
import logging
from typing import Optional

from fastapi import status

from menu_session.core.exceptions import BackendRequestError
from menu_session.domain.schemas.session import (
    ContextualSession,
    SessionValidationResult,
)
from menu_session.infrastructure.http.backend_client import BackendClient

logger = logging.getLogger(__name__)

# Fields owned by this service, never sent upstream
_LOCAL_FIELDS = {"state"}


class HttpSessionBackend:
    """SessionBackend implementation over the backend REST API."""

    def __init__(self, client: BackendClient):
        self.client = client

    @staticmethod
    def _merge(local: ContextualSession, data: Optional[dict]) -> ContextualSession:
        if not data:
            return local
        merged = local.model_dump(by_alias=True)
        merged.update({k: v for k, v in data.items() if v is not None})
        merged["state"] = local.state
        return ContextualSession.model_validate(merged)

    async def create_session(self, session: ContextualSession) -> ContextualSession:
        data = await self.client.request(
            "POST",
            "/sessions",
            json=session.model_dump(mode="json", by_alias=True, exclude=_LOCAL_FIELDS),
        )
        return self._merge(session, data)

    async def validate_session(self, session_id: str) -> SessionValidationResult:
        try:
            data = await self.client.request("GET", f"/sessions/{session_id}/validate")
        except BackendRequestError as e:
            if e.status_code in (status.HTTP_404_NOT_FOUND, status.HTTP_410_GONE):
                return SessionValidationResult(is_valid=False, reason="Sessão não encontrada ou expirada")
            raise

        data = data or {}
        if not data.get("isValid", False):
            return SessionValidationResult(
                is_valid=False, reason=data.get("reason") or "Sessão inválida"
            )
        session_data = data.get("session")
        session = ContextualSession.model_validate(session_data) if session_data else None
        return SessionValidationResult(is_valid=True, session=session)

    async def associate_customer(self, session_id: str, customer_id: str) -> None:
        await self.client.request(
            "POST", f"/sessions/{session_id}/customer", json={"customerId": customer_id}
        )

    async def update_activity(self, session_id: str) -> None:
        await self.client.request("POST", f"/sessions/{session_id}/activity")

    async def update_session(self, session_id: str, fields: dict) -> None:
        await self.client.request("PATCH", f"/sessions/{session_id}", json=fields)

    async def expire_session(self, session_id: str) -> None:
        await self.client.request("DELETE", f"/sessions/{session_id}")

    async def get_active_sessions(self, store_id: str) -> list[ContextualSession]:
        data = await self.client.request("GET", "/sessions", params={"store_id": store_id})
        return [ContextualSession.model_validate(item) for item in (data or [])]
