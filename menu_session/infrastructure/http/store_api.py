"""
Store API Client
Store open/closed status, table capacity and storefront settings.
"""
from menu_session.domain.schemas.session import StoreSettings, StoreStatus, TableStatus
from menu_session.infrastructure.http.backend_client import BackendClient


class StoreApi:
    """StoreAccessBackend implementation over the backend REST API."""

    def __init__(self, client: BackendClient):
        self.client = client

    async def get_store_status(self, store_id: str) -> StoreStatus:
        data = await self.client.request("GET", f"/tenant/{store_id}/status") or {}
        return StoreStatus.model_validate({"storeId": store_id, **data})

    async def get_table_status(self, store_id: str, table_id: str) -> TableStatus:
        data = (
            await self.client.request(
                "GET", f"/tables/{table_id}/status", params={"tenant_id": store_id}
            )
            or {}
        )
        return TableStatus.model_validate({"tableId": table_id, **data})

    async def get_store_settings(self, store_id: str) -> StoreSettings:
        data = await self.client.request("GET", f"/tenant/{store_id}/settings") or {}
        return StoreSettings.model_validate({"storeId": store_id, **data})
