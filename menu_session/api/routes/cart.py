from fastapi import APIRouter, Depends, status

from menu_session.api.dependencies import get_container, get_facade
from menu_session.application.use_cases.auth_session import AuthSessionFacade
from menu_session.container import ServiceContainer
from menu_session.domain.schemas.auth import MessageResponse
from menu_session.domain.schemas.cart import Cart, CartItem

router = APIRouter(prefix="/api/cart", tags=["Cart"])


@router.get("", response_model=Cart)
async def get_cart(
    facade: AuthSessionFacade = Depends(get_facade),
    container: ServiceContainer = Depends(get_container),
) -> Cart:
    return await container.cart_store.get(facade.device_key)


@router.post("/items", response_model=Cart, status_code=status.HTTP_201_CREATED)
async def add_item(
    item: CartItem,
    facade: AuthSessionFacade = Depends(get_facade),
    container: ServiceContainer = Depends(get_container),
) -> Cart:
    return await container.cart_store.add_item(facade.device_key, item)


@router.delete("", response_model=MessageResponse)
async def clear_cart(
    facade: AuthSessionFacade = Depends(get_facade),
    container: ServiceContainer = Depends(get_container),
) -> MessageResponse:
    await container.cart_store.clear(facade.device_key)
    return MessageResponse(message="Carrinho esvaziado")
