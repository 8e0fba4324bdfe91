from __future__ import annotations

import base64
import binascii
import logging
from typing import Any

from portal_core.config import crm_timeout_seconds, env_str
from portal_core.errors import UpstreamError
from portal_core.http import response_json, send_request

logger = logging.getLogger(__name__)

LOGIN_ENDPOINTS = (
    "/api/crm-user/login",
    "/api/login",
    "/api/auth/login",
    "/api/user/login",
    "/auth/login",
    "/login",
)


def decode_service_password(raw: str) -> str:
    """Service passwords may be stored base64-encoded; decode only when that yields printable text."""
    try:
        decoded = base64.b64decode(raw, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return raw
    if not decoded or decoded == raw or not decoded.isprintable():
        return raw
    return decoded


def _extract_token(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    nested = payload.get("data")
    if payload.get("success") and isinstance(nested, dict) and nested.get("token"):
        return str(nested["token"])
    if payload.get("token"):
        return str(payload["token"])
    if isinstance(nested, dict) and nested.get("token"):
        return str(nested["token"])
    return None


def authenticate_with_crm(host: str, email: str, password: str) -> str | None:
    """Log in to the CRM, walking the known login endpoints until one answers.

    A 404 or an unreachable endpoint moves on to the next candidate; any other
    failure stops the walk. Returns the bearer token or None.
    """
    for endpoint in LOGIN_ENDPOINTS:
        try:
            response = send_request(
                "POST",
                f"{host.rstrip('/')}{endpoint}",
                service="CRM auth",
                timeout=crm_timeout_seconds(),
                headers={"Accept": "application/json"},
                json={"email": email, "password": password},
            )
        except UpstreamError as exc:
            logger.warning("CRM login endpoint %s unreachable: %s", endpoint, exc.message)
            continue
        if response.status_code == 404:
            continue
        if response.status_code >= 400:
            logger.warning("CRM service login rejected at %s with %s", endpoint, response.status_code)
            return None
        token = _extract_token(response_json(response))
        if token:
            return token
        logger.warning("CRM service login at %s returned no token", endpoint)
        return None
    logger.error("No CRM login endpoint accepted the service account")
    return None


def service_account_token(host: str) -> str | None:
    username = env_str("CRM_API_USERNAME")
    encoded_password = env_str("CRM_API_PASSWORD")
    if not username or not encoded_password:
        logger.warning("CRM service account is not configured")
        return None
    return authenticate_with_crm(host, username, decode_service_password(encoded_password))
