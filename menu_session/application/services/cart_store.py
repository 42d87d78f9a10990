"""
Cart Store
Per-device cart persisted in key-value storage, de-duplicating identical lines.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from menu_session.domain.schemas.cart import Cart, CartItem
from menu_session.domain.schemas.fingerprint import utcnow
from menu_session.infrastructure.storage.kv_store import KeyValueStorage

logger = logging.getLogger(__name__)

MAX_ITEM_QUANTITY = 99


class CartStore:
    def __init__(
        self,
        storage: KeyValueStorage,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def _key(device_key: str) -> str:
        return f"cart:{device_key}"

    async def get(self, device_key: str) -> Cart:
        raw = await self.storage.get(self._key(device_key))
        if not raw:
            return Cart()
        try:
            return Cart.model_validate_json(raw)
        except ValueError as e:
            logger.warning(f"Corrupted cart for device {device_key[:12]} discarded: {e}")
            return Cart()

    async def _save(self, device_key: str, cart: Cart) -> None:
        cart.updated_at = self._clock()
        await self.storage.set(
            self._key(device_key), cart.model_dump_json(by_alias=True), ttl_seconds=self.ttl_seconds
        )

    async def add_item(self, device_key: str, item: CartItem) -> Cart:
        """Add a line; an identical product/notes/additionals line gets its quantity bumped."""
        cart = await self.get(device_key)
        key = item.dedup_key()
        for existing in cart.items:
            if existing.dedup_key() == key:
                existing.quantity = min(existing.quantity + item.quantity, MAX_ITEM_QUANTITY)
                break
        else:
            cart.items.append(item)
        await self._save(device_key, cart)
        return cart

    async def clear(self, device_key: str) -> None:
        await self.storage.delete(self._key(device_key))
