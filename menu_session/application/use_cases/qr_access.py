"""
QR Code Access Use Case
Opens a session from a storefront URL carrying store, table and isDelivery parameters.
"""
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from menu_session.application.use_cases.auth_session import AuthSessionFacade
from menu_session.core.exceptions import ValidationError
from menu_session.domain.schemas.session import QRAccessResult

logger = logging.getLogger(__name__)

ACCESS_PARAMS = ("store", "table", "isDelivery")


@dataclass(frozen=True)
class AccessParams:
    store_id: str
    table_id: Optional[str] = None
    is_delivery: bool = False


def parse_access_params(url: str) -> Optional[AccessParams]:
    """Read store/table/isDelivery; None when the URL names no store."""
    query = dict(parse_qsl(urlsplit(url).query))
    store_id = (query.get("store") or "").strip()
    if not store_id:
        return None
    return AccessParams(
        store_id=store_id,
        table_id=(query.get("table") or "").strip() or None,
        is_delivery=query.get("isDelivery") == "true",
    )


def strip_access_params(url: str) -> str:
    """Remove the access parameters, keeping the rest of the URL intact."""
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in ACCESS_PARAMS]
    return urlunsplit(parts._replace(query=urlencode(kept)))


async def process_qr_access(
    facade: AuthSessionFacade,
    url: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> QRAccessResult:
    """
    Create or resume the device's session for the URL's context.

    Safe to repeat with the same URL: an existing session for that context
    is resumed.

    Raises:
        ValidationError: If the URL has no store, or a dine-in URL has no table
    """
    params = parse_access_params(url)
    if params is None:
        raise ValidationError("Parâmetros de acesso inválidos")
    if not params.is_delivery and not params.table_id:
        raise ValidationError("Mesa não especificada para acesso presencial")

    previous_id = facade.session.id if facade.session else None
    session = await facade.initialize_session(
        store_id=params.store_id,
        table_id=None if params.is_delivery else params.table_id,
        is_delivery=params.is_delivery,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    logger.info(
        f"QR access to store {params.store_id} "
        f"({'delivery' if params.is_delivery else f'table {params.table_id}'})"
    )
    return QRAccessResult(
        session=session,
        cleaned_url=strip_access_params(url),
        resumed=previous_id == session.id,
    )
