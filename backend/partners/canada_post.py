from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from portal_core.config import env_str, portal_host, require_env
from portal_core.errors import UpstreamError, ValidationError, upstream_error_message
from portal_core.http import response_json, send_request

logger = logging.getLogger(__name__)

RETRIEVE_URL = "https://ws1.postescanada-canadapost.ca/AddressComplete/Interactive/Retrieve/v2.10/json3.ws"


@dataclass
class RetrievedAddress:
    street: str
    unit: str
    city: str
    province: str
    postalCode: str

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> RetrievedAddress:
        return cls(
            street=item.get("Line1") or "",
            unit=item.get("Line2") or "",
            city=item.get("City") or "",
            province=item.get("Province") or "",
            postalCode=item.get("PostalCode") or "",
        )

    def as_dict(self) -> dict[str, str]:
        return asdict(self)


def retrieve_address(address_id: str | None, search_term: str | None = None) -> RetrievedAddress:
    """Resolve an AddressComplete `Id` (from a find/autocomplete step) into a full address."""
    if not address_id:
        raise ValidationError("Address ID is required")
    api_key = require_env("POSTCANADA_API_KEY")
    origin = env_str("POSTCANADA_ORIGIN") or portal_host()
    logger.info("Retrieving Canada Post address %s (search=%r)", address_id, search_term)

    response = send_request(
        "GET",
        RETRIEVE_URL,
        service="Canada Post",
        headers={"Content-Type": "application/json", "Origin": origin, "Referer": origin},
        params={"Key": api_key, "Id": address_id},
    )
    if response.status_code >= 400:
        raise UpstreamError(
            "Failed to retrieve address details",
            status_code=response.status_code,
            details=upstream_error_message(response),
        )

    payload = response_json(response)
    if not isinstance(payload, dict):
        raise UpstreamError("Invalid response format from Post Canada", status_code=500)
    if payload.get("Error"):
        raise ValidationError(
            "Post Canada API Error",
            details=payload.get("Description") or payload.get("Cause") or "Unknown error",
            extra={"resolution": payload.get("Resolution") or "Please check your API configuration"},
        )
    items = payload.get("Items")
    if not isinstance(items, list) or not items:
        raise UpstreamError("Invalid response format from Post Canada", status_code=500)
    item = items[0]
    # Errors can also arrive as the first item of an otherwise normal response.
    if isinstance(item, dict) and item.get("Error"):
        raise ValidationError(
            "Post Canada API Error",
            details=item.get("Description") or item.get("Cause") or "Unknown error",
            extra={"resolution": item.get("Resolution") or "Please check your API configuration"},
        )
    return RetrievedAddress.from_item(item if isinstance(item, dict) else {})
