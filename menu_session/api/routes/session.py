from typing import Optional

from fastapi import APIRouter, Depends, Request

from menu_session.api.dependencies import (
    client_ip,
    get_container,
    get_facade,
    require_admin,
    user_agent,
)
from menu_session.application.use_cases import qr_access as qr_access_uc
from menu_session.application.use_cases.auth_session import AuthSessionFacade
from menu_session.container import ServiceContainer
from menu_session.domain.schemas.auth import AuthSessionState, MessageResponse
from menu_session.domain.schemas.session import QRAccessRequest, QRAccessResult, SessionStats

router = APIRouter(prefix="/api/session", tags=["Contextual Session"])


@router.post("/access", response_model=QRAccessResult)
async def qr_access(
    request: QRAccessRequest,
    http_request: Request,
    facade: AuthSessionFacade = Depends(get_facade),
) -> QRAccessResult:
    return await qr_access_uc.process_qr_access(
        facade,
        request.url,
        ip_address=client_ip(http_request),
        user_agent=user_agent(http_request),
    )


@router.get("/state", response_model=AuthSessionState)
async def session_state(facade: AuthSessionFacade = Depends(get_facade)) -> AuthSessionState:
    return facade.state


@router.post("/validate", response_model=AuthSessionState)
async def validate_session(facade: AuthSessionFacade = Depends(get_facade)) -> AuthSessionState:
    await facade.validate_current_session()
    return facade.state


@router.post("/activity", response_model=AuthSessionState)
async def update_activity(facade: AuthSessionFacade = Depends(get_facade)) -> AuthSessionState:
    await facade.update_activity()
    return facade.state


@router.get("/guest-permission")
async def guest_permission(facade: AuthSessionFacade = Depends(get_facade)) -> dict:
    return {"canOrderAsGuest": await facade.check_guest_order_permission()}


@router.get("/stats", response_model=SessionStats, dependencies=[Depends(require_admin)])
async def session_stats(
    store_id: Optional[str] = None,
    container: ServiceContainer = Depends(get_container),
) -> SessionStats:
    return container.session_manager.get_session_stats(store_id)


@router.post("/logout", response_model=MessageResponse)
async def logout_session(facade: AuthSessionFacade = Depends(get_facade)) -> MessageResponse:
    await facade.logout()
    return MessageResponse(message="Sessão encerrada")
