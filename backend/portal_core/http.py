from __future__ import annotations

import logging
import time
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from .config import debug_payloads_enabled
from .errors import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
CONNECT_TIMEOUT_SECONDS = 8.0

_SECRET_PARAMS = {"consumer_secret", "consumer_key", "key", "q", "token"}
_SECRET_FIELDS = {"password", "old_password", "new_password", "cvc", "card_number", "token", "secret"}


def build_client(timeout: float | None = None) -> httpx.Client:
    seconds = timeout or DEFAULT_TIMEOUT_SECONDS
    return httpx.Client(timeout=httpx.Timeout(seconds, connect=min(seconds, CONNECT_TIMEOUT_SECONDS)))


def redact_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [
        (name, "***" if name.lower() in _SECRET_PARAMS else value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def mask_card_number(value: Any) -> str:
    digits = "".join(ch for ch in str(value or "") if ch.isdigit())
    if len(digits) <= 4:
        return "****"
    return f"{'*' * (len(digits) - 4)}{digits[-4:]}"


def redact_payload(payload: Any) -> Any:
    if isinstance(payload, dict):
        redacted: dict[str, Any] = {}
        for key, value in payload.items():
            lowered = str(key).lower()
            if lowered == "card_number":
                redacted[key] = mask_card_number(value)
            elif lowered in _SECRET_FIELDS:
                redacted[key] = "***"
            else:
                redacted[key] = redact_payload(value)
        return redacted
    if isinstance(payload, list):
        return [redact_payload(item) for item in payload]
    return payload


def send_request(
    method: str,
    url: str,
    *,
    service: str,
    timeout: float | None = None,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    json: Any = None,
    data: dict[str, Any] | None = None,
    files: Any = None,
) -> httpx.Response:
    """Issue one outbound request; transport failures become `UpstreamError` (504/502)."""
    if debug_payloads_enabled() and json is not None:
        logger.debug("%s %s %s payload=%s", service, method, redact_url(url), redact_payload(json))
    started = time.perf_counter()
    try:
        with build_client(timeout) as client:
            response = client.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json,
                data=data,
                files=files,
            )
    except httpx.TimeoutException as exc:
        logger.warning("%s %s %s timed out", service, method, redact_url(url))
        raise UpstreamError(f"{service} request timed out.", status_code=504) from exc
    except httpx.HTTPError as exc:
        logger.warning("%s %s %s failed: %s", service, method, redact_url(url), exc)
        raise UpstreamError(f"Failed to reach {service}.", status_code=502, details=str(exc)) from exc

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    logger.info(
        "%s %s %s -> %s (%sms)",
        service,
        method,
        redact_url(url),
        response.status_code,
        elapsed_ms,
    )
    if debug_payloads_enabled():
        logger.debug("%s response body=%s", service, response.text[:2000])
    return response


def response_json(response: httpx.Response) -> Any:
    """Parsed JSON body, or None when the body is empty or not JSON."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None
