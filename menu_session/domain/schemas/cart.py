"""
Cart Schemas
Per-device cart with item de-duplication.
"""
from datetime import datetime
from typing import Optional, Union

from pydantic import Field, model_validator

from menu_session.domain.schemas.fingerprint import CamelModel, utcnow


class CartAdditional(CamelModel):
    id: Union[int, str]
    name: Optional[str] = None
    price: float = 0.0
    quantity: int = Field(default=1, ge=1)


class CartItem(CamelModel):
    product_id: Optional[Union[int, str]] = None
    identify: Optional[str] = None
    name: str = Field(..., max_length=255)
    price: float = Field(..., ge=0)
    quantity: int = Field(default=1, ge=1, le=99)
    notes: str = Field(default="", max_length=500)
    additionals: list[CartAdditional] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_identity(self):
        if self.product_id is None and not self.identify:
            raise ValueError("product_id or identify is required")
        return self

    def dedup_key(self) -> tuple:
        """Items with the same product, notes and additionals merge into one line."""
        product = str(self.product_id) if self.product_id is not None else self.identify
        additional_ids = tuple(sorted(str(a.id) for a in self.additionals))
        return (product, self.notes.strip(), additional_ids)


class Cart(CamelModel):
    items: list[CartItem] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)
