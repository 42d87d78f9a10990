"""
Ordering Backend HTTP Client
Shared httpx client: explicit timeouts, envelope unwrapping, error classification.
"""
import logging
from typing import Any, Optional

import httpx

from menu_session.core.exceptions import BackendRequestError, TransientBackendError

logger = logging.getLogger(__name__)


class BackendClient:
    """
    Thin async client for the ordering backend.

    Every response uses the envelope {success, message, data}. Connectivity
    problems, timeouts and 5xx become TransientBackendError; 4xx and
    success=false become BackendRequestError.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        token: Optional[str] = None,
    ) -> Any:
        """
        Perform a request and return the envelope's data.

        Raises:
            TransientBackendError: On timeout, connection failure or 5xx
            BackendRequestError: On 4xx or an explicit success=false
        """
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await self._get_client().request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Backend timeout on {method} {path}: {e}")
            raise TransientBackendError("Tempo de resposta esgotado. Tente novamente.")
        except httpx.TransportError as e:
            logger.warning(f"Backend unreachable on {method} {path}: {e}")
            raise TransientBackendError("Sem conexão com o servidor. Tente novamente.")

        body = self._parse_body(response)

        if response.status_code >= 500:
            logger.error(f"Backend {response.status_code} on {method} {path}")
            raise TransientBackendError(status_code=response.status_code)

        message = body.get("message") if isinstance(body, dict) else None
        data = body.get("data") if isinstance(body, dict) else None

        if response.status_code >= 400:
            raise BackendRequestError(
                detail=message or f"Requisição recusada ({response.status_code})",
                status_code=response.status_code,
                data=data if isinstance(data, dict) else body if isinstance(body, dict) else None,
            )

        if isinstance(body, dict) and body.get("success") is False:
            raise BackendRequestError(
                detail=message or "Requisição recusada",
                status_code=400,
                data=data if isinstance(data, dict) else None,
            )

        if isinstance(body, dict) and "data" in body:
            return data
        return body

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"message": response.text}
