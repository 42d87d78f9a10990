"""
Customer API Client
Traditional bearer-token endpoints and customer lookup.
"""
import logging
from typing import Optional

from fastapi import status

from menu_session.core.exceptions import BackendRequestError
from menu_session.domain.schemas.auth import CustomerUser
from menu_session.infrastructure.http.backend_client import BackendClient

logger = logging.getLogger(__name__)


class CustomerApi:
    def __init__(self, client: BackendClient):
        self.client = client

    async def get_me(self, token: str) -> CustomerUser:
        data = await self.client.request("GET", "/auth/me", token=token)
        if isinstance(data, dict) and "user" in data:
            data = data["user"]
        return CustomerUser.model_validate(data)

    async def logout(self, token: str) -> None:
        await self.client.request("POST", "/auth/logout", token=token)

    async def refresh(self, token: str) -> dict:
        """Exchange a bearer token close to expiry for a new one."""
        return await self.client.request("POST", "/auth/refresh", token=token) or {}

    async def find_by_phone(self, phone: str, store_id: str) -> Optional[CustomerUser]:
        try:
            data = await self.client.request(
                "GET", f"/customers/by-phone/{phone}", params={"tenant_id": store_id}
            )
        except BackendRequestError as e:
            if e.status_code == status.HTTP_404_NOT_FOUND:
                return None
            raise
        if not data:
            return None
        return CustomerUser.model_validate(data)
