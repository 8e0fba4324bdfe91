from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from portal_core.errors import ValidationError


@dataclass
class CartItem:
    product_id: str
    variation_id: str | None = None
    size: str | None = None
    color: str | None = None
    quantity: int = 1

    @property
    def cart_id(self) -> str:
        return self.variation_id or self.product_id

    def as_dict(self) -> dict[str, Any]:
        return {
            "productId": self.product_id,
            "variationId": self.variation_id,
            "size": self.size,
            "color": self.color,
            "quantity": self.quantity,
        }


def build_checkout_url(item: CartItem, store_url: str) -> str:
    if not item.product_id:
        raise ValidationError("productId is required")
    return f"{store_url.rstrip('/')}/checkout?onboarding-add-to-cart={quote(str(item.cart_id))}"
