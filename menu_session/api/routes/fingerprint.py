from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request, Response

from menu_session.api.dependencies import get_container, get_facade, require_admin
from menu_session.application.use_cases.auth_session import AuthSessionFacade
from menu_session.container import ServiceContainer
from menu_session.domain.schemas.auth import BootstrapRequest, BootstrapResponse
from menu_session.domain.schemas.fingerprint import (
    AuditEntry,
    FingerprintAnalytics,
    SecurityReport,
)
from menu_session.infrastructure.database.repositories import AuditLogRepository

router = APIRouter(prefix="/api/fingerprint", tags=["Device Fingerprint"])


@router.post("/bootstrap", response_model=BootstrapResponse)
async def bootstrap(
    request: BootstrapRequest,
    http_request: Request,
    response: Response,
    container: ServiceContainer = Depends(get_container),
) -> BootstrapResponse:
    """
    Fingerprint the submitted device signals, resume the device's session
    for the store and restore the credential cookie.

    A valid device cookie keeps the device id; otherwise a new device is
    registered. The device cookie is re-issued either way.
    """
    device = container.identity.resolve(http_request.cookies.get(container.identity.cookie_name))
    facade, fingerprint = await container.registry.bootstrap(
        request.signals,
        store_id=request.store_id,
        cookie_value=http_request.cookies.get(container.credential_store.cookie_name),
        device=device,
    )
    cookies = [container.identity.cookie_for(facade.device_key, facade.fingerprint)]
    for cookie in cookies + facade.take_pending_cookies():
        response.set_cookie(**asdict(cookie))
    return BootstrapResponse(fingerprint=fingerprint, state=facade.state)


@router.get("/report", response_model=SecurityReport)
async def security_report(
    facade: AuthSessionFacade = Depends(get_facade),
    container: ServiceContainer = Depends(get_container),
) -> SecurityReport:
    return await container.detection.generate_security_report(facade.fingerprint)


@router.get("/analytics", response_model=FingerprintAnalytics, dependencies=[Depends(require_admin)])
async def analytics(container: ServiceContainer = Depends(get_container)) -> FingerprintAnalytics:
    return await container.fingerprint_store.get_analytics()


@router.get("/audit", response_model=list[AuditEntry])
async def audit_trail(
    limit: int = Query(20, ge=1, le=100),
    facade: AuthSessionFacade = Depends(get_facade),
    container: ServiceContainer = Depends(get_container),
) -> list[AuditEntry]:
    """Most recent security events recorded for this device's fingerprint."""
    async with container.session_factory() as db:
        rows = await AuditLogRepository(db).list_by_fingerprint(facade.fingerprint, limit)
    return [
        AuditEntry(
            event_type=row.event_type.value,
            risk_score=row.risk_score,
            store_id=row.store_id,
            customer_id=row.customer_id,
            ip_address=row.ip_address,
            created_at=row.created_at,
        )
        for row in rows
    ]
