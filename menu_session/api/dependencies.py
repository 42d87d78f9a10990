"""
FastAPI Dependencies
Service container access, device resolution, admin guard and customer bearer token extraction.
"""
import secrets
from dataclasses import asdict
from typing import Optional

from fastapi import Depends, Header, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from menu_session.application.use_cases.auth_session import AuthSessionFacade
from menu_session.container import ServiceContainer
from menu_session.core.exceptions import AuthenticationError, DeviceNotRegisteredError

admin_security = HTTPBearer(auto_error=False)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_facade(
    request: Request,
    response: Response,
    container: ServiceContainer = Depends(get_container),
) -> AuthSessionFacade:
    """
    The facade of the device named by the signed device cookie.
    Credential cookies re-issued since the last request go out on this response.

    Raises:
        DeviceNotRegisteredError: No valid device cookie, or the device must bootstrap again
    """
    claims = container.identity.resolve(request.cookies.get(container.identity.cookie_name))
    if claims is None:
        raise DeviceNotRegisteredError()
    facade = container.registry.get(claims.device_id)
    if facade is None:
        raise DeviceNotRegisteredError("Dispositivo não inicializado ou inativo")
    for cookie in facade.take_pending_cookies():
        response.set_cookie(**asdict(cookie))
    return facade


def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(admin_security),
    container: ServiceContainer = Depends(get_container),
) -> None:
    """
    Guard for operational endpoints.

    Raises:
        AuthenticationError: Missing or wrong admin token, or none configured
    """
    expected = container.settings.ADMIN_API_TOKEN
    if not expected or credentials is None:
        raise AuthenticationError("Token administrativo ausente")
    if not secrets.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise AuthenticationError("Token administrativo inválido")


def get_bearer_token(
    request: Request,
    authorization: Optional[str] = Header(None),
    container: ServiceContainer = Depends(get_container),
) -> str:
    """
    Customer bearer token: Authorization header first, then the device's
    current credential, then the credential cookie.

    Raises:
        AuthenticationError: If none carries a token
    """
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):]

    claims = container.identity.resolve(request.cookies.get(container.identity.cookie_name))
    facade = container.registry.get(claims.device_id) if claims else None
    if facade is not None and facade.token:
        return facade.token

    cookie_value = request.cookies.get(container.credential_store.cookie_name)
    stored = container.credential_store.decode(cookie_value)
    if stored is None or container.credential_store.is_expired(stored):
        raise AuthenticationError("Token de acesso ausente")
    return stored.token


def client_ip(request: Request) -> str:
    return getattr(request.state, "client_ip", None) or "unknown"


def user_agent(request: Request) -> Optional[str]:
    return getattr(request.state, "user_agent", None)
