from __future__ import annotations

import logging
import time
from typing import Any, Callable

from portal_core.config import WooCommerceSettings
from portal_core.errors import UpstreamError, upstream_error_message
from portal_core.http import response_json, send_request

logger = logging.getLogger(__name__)

VARIATIONS_TTL_SECONDS = 30 * 60
REST_PREFIX = "/wp-json/wc/v3"


class TTLCache:
    """Read-through cache with expiry on read.

    No fill guard: concurrent misses may both fetch and the last write wins,
    which is fine for idempotent upstream reads.
    """

    def __init__(self, ttl_seconds: float = VARIATIONS_TTL_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (value, self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class WooCommerceClient:
    def __init__(self, settings: WooCommerceSettings, variations_cache: TTLCache | None = None) -> None:
        self.settings = settings
        self.variations_cache = variations_cache if variations_cache is not None else TTLCache()

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        query: dict[str, Any] = {
            "consumer_key": self.settings.consumer_key,
            "consumer_secret": self.settings.consumer_secret,
        }
        query.update(params or {})
        response = send_request(
            "GET",
            f"{self.settings.base_url}{REST_PREFIX}/{endpoint.lstrip('/')}",
            service="WooCommerce",
            timeout=self.settings.timeout_seconds,
            params=query,
        )
        if response.status_code >= 400:
            message = upstream_error_message(response)
            logger.warning("WooCommerce GET %s failed with %s: %s", endpoint, response.status_code, message)
            raise UpstreamError(message, status_code=response.status_code)
        return response_json(response)

    def fetch_product(self, product_id: str | int) -> dict[str, Any] | None:
        try:
            product = self.get(f"products/{product_id}")
        except UpstreamError as exc:
            if exc.status_code == 404:
                return None
            raise
        return product if isinstance(product, dict) and product else None

    def fetch_product_variations(self, product_id: str | int, product_type: str = "variable") -> list[Any]:
        cache_key = f"variations_{product_id}_{product_type}"
        cached = self.variations_cache.get(cache_key)
        if cached is not None:
            return cached
        variations = self.get(
            f"products/{product_id}/variations",
            {"per_page": 100, "status": "publish"},
        )
        result = variations if isinstance(variations, list) else []
        self.variations_cache.set(cache_key, result)
        return result
