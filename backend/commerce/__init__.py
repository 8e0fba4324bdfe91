from .checkout import CartItem, build_checkout_url
from .store_cart import EMPTY_LOCAL_CART, StoreCartClient, build_cart_item
from .woocommerce import TTLCache, WooCommerceClient

__all__ = [
    "EMPTY_LOCAL_CART",
    "CartItem",
    "StoreCartClient",
    "TTLCache",
    "WooCommerceClient",
    "build_cart_item",
    "build_checkout_url",
]
