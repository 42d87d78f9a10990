from dataclasses import asdict

from fastapi import APIRouter, Depends, Request, Response

from menu_session.api.dependencies import (
    client_ip,
    get_bearer_token,
    get_container,
    get_facade,
    user_agent,
)
from menu_session.application.use_cases.auth_session import AuthSessionFacade
from menu_session.container import ServiceContainer
from menu_session.domain.schemas.auth import (
    AuthCodeRequest,
    AuthCodeResult,
    AuthCodeVerifyRequest,
    CustomerUser,
    MagicLinkRequest,
    MagicLinkResponse,
    MagicLinkSessionResult,
    MagicLinkVerifyRequest,
    MessageResponse,
)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


@router.post("/magic-link", response_model=MagicLinkResponse)
async def request_magic_link(
    request: MagicLinkRequest,
    http_request: Request,
    facade: AuthSessionFacade = Depends(get_facade),
    container: ServiceContainer = Depends(get_container),
) -> MagicLinkResponse:
    """The link is bound to the fingerprint this device presented at bootstrap."""
    return await container.whatsapp_auth.request_magic_link(
        request.model_copy(update={"fingerprint": facade.fingerprint}),
        ip_address=client_ip(http_request),
        user_agent=user_agent(http_request),
    )


@router.post("/magic-link/verify", response_model=MagicLinkSessionResult)
async def verify_magic_link(
    request: MagicLinkVerifyRequest,
    http_request: Request,
    facade: AuthSessionFacade = Depends(get_facade),
) -> MagicLinkSessionResult:
    """Redeem a magic link on the device that opened it."""
    return await facade.redeem_magic_link(
        request.token,
        ip_address=client_ip(http_request),
        user_agent=user_agent(http_request),
    )


@router.post("/code/request", response_model=AuthCodeResult)
async def request_code(
    request: AuthCodeRequest,
    container: ServiceContainer = Depends(get_container),
) -> AuthCodeResult:
    return await container.auth_code.request_authentication_code(
        request.phone, request.store_id, request.name
    )


@router.post("/code/verify", response_model=AuthCodeResult, response_model_exclude={"token"})
async def verify_code(
    request: AuthCodeVerifyRequest,
    http_request: Request,
    response: Response,
    facade: AuthSessionFacade = Depends(get_facade),
) -> AuthCodeResult:
    """Verify a WhatsApp code; on success the credential goes out only as an HttpOnly cookie."""
    result, cookie = await facade.login_with_code(
        request.phone,
        request.code,
        request.store_id,
        ip_address=client_ip(http_request),
        user_agent=user_agent(http_request),
    )
    if cookie is not None:
        response.set_cookie(**asdict(cookie))
    return result


@router.get("/me", response_model=CustomerUser)
async def get_me(
    token: str = Depends(get_bearer_token),
    container: ServiceContainer = Depends(get_container),
) -> CustomerUser:
    return await container.customer_api.get_me(token)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    http_request: Request,
    response: Response,
    facade: AuthSessionFacade = Depends(get_facade),
    container: ServiceContainer = Depends(get_container),
) -> MessageResponse:
    await facade.logout_user(ip_address=client_ip(http_request))
    response.delete_cookie(container.credential_store.cookie_name, path="/")
    return MessageResponse(message="Logout realizado com sucesso")
