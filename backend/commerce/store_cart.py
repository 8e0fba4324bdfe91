from __future__ import annotations

import logging
from typing import Any

from portal_core.errors import UpstreamError, ValidationError, upstream_error_details, upstream_error_message
from portal_core.http import response_json, send_request
from portal_core.validation import positive_int

logger = logging.getLogger(__name__)

STORE_CART_PATH = "/wp-json/wc/store/cart"
NONCE_HEADER = "nonce"

EMPTY_LOCAL_CART = {"items": [], "total_items": 0, "total_price": "0.00", "is_local_cart": True}


def build_cart_item(
    *,
    product_id: Any,
    variation_id: Any = None,
    quantity: Any = 1,
    size: str | None = None,
    color: str | None = None,
    meta_data: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    if product_id in (None, ""):
        raise ValidationError("productId is required")
    item: dict[str, Any] = {
        "id": variation_id or product_id,
        "quantity": positive_int(quantity if quantity is not None else 1, "quantity"),
    }
    if variation_id:
        item["variation_id"] = variation_id
    attributes = []
    if size:
        attributes.append({"attribute": "pa_size", "value": str(size).lower()})
    if color:
        attributes.append({"attribute": "pa_color", "value": str(color).lower()})
    if attributes:
        item["item_data"] = {"attributes": attributes}
    if meta_data:
        item["meta_data"] = meta_data
    return item


class StoreCartClient:
    """WooCommerce Store API cart, authenticated with the portal's auth token and a cart nonce."""

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    def _headers(self, auth_token: str, nonce: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Authorization": auth_token}
        if nonce:
            headers["Nonce"] = nonce
            headers["X-WC-Store-API-Nonce"] = nonce
        return headers

    def get_cart(self, auth_token: str) -> tuple[Any, str | None]:
        response = send_request(
            "GET",
            f"{self.base_url}{STORE_CART_PATH}",
            service="Store API",
            headers=self._headers(auth_token),
        )
        if response.status_code >= 400:
            raise UpstreamError(
                upstream_error_message(response),
                status_code=response.status_code,
                details=upstream_error_details(response),
            )
        return response_json(response), response.headers.get(NONCE_HEADER)

    def _post_item(self, auth_token: str, nonce: str | None, item: dict[str, Any]) -> Any:
        return send_request(
            "POST",
            f"{self.base_url}{STORE_CART_PATH}/add-item",
            service="Store API",
            headers=self._headers(auth_token, nonce),
            json=item,
        )

    def add_item(self, auth_token: str, nonce: str | None, item: dict[str, Any]) -> tuple[Any, str | None]:
        """Add `item`, fetching a nonce first when none is known.

        A rejection that mentions the nonce re-initializes it and retries once.
        Returns the updated cart and the nonce that should be kept.
        """
        if not nonce:
            _, nonce = self.get_cart(auth_token)
        response = self._post_item(auth_token, nonce, item)
        if response.status_code >= 400 and "nonce" in upstream_error_message(response).lower():
            logger.info("Store API rejected the cart nonce, refreshing and retrying once")
            _, nonce = self.get_cart(auth_token)
            response = self._post_item(auth_token, nonce, item)
        if response.status_code >= 400:
            raise UpstreamError(
                upstream_error_message(response),
                status_code=response.status_code,
                details=upstream_error_details(response),
            )
        return response_json(response), response.headers.get(NONCE_HEADER) or nonce
