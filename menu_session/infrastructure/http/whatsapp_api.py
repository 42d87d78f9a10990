"""
WhatsApp API Client
Code issuing/verification and magic link delivery through the backend.
"""
from typing import Optional

from menu_session.infrastructure.http.backend_client import BackendClient


class WhatsAppApi:
    """Backend WhatsApp endpoints. Phones are always sent normalized (55 + DDD + number)."""

    def __init__(self, client: BackendClient):
        self.client = client

    async def request_code(
        self, phone: str, tenant_id: str, name: Optional[str] = None
    ) -> dict:
        payload = {"phone": phone, "tenant_id": tenant_id}
        if name:
            payload["name"] = name
        return await self.client.request("POST", "/whatsapp/request-code", json=payload) or {}

    async def verify_code(
        self, phone: str, code: str, tenant_id: str, device_name: str = "web"
    ) -> dict:
        return (
            await self.client.request(
                "POST",
                "/whatsapp/verify-code",
                json={
                    "phone": phone,
                    "code": code,
                    "tenant_id": tenant_id,
                    "device_name": device_name,
                },
            )
            or {}
        )

    async def send_magic_link(
        self, phone: str, store_id: str, link: str, expires_in_minutes: int
    ) -> dict:
        return (
            await self.client.request(
                "POST",
                "/whatsapp/magic-link",
                json={
                    "phone": phone,
                    "tenant_id": store_id,
                    "link": link,
                    "expires_in_minutes": expires_in_minutes,
                },
            )
            or {}
        )
