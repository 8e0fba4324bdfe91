from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from portal_core.config import crm_host, crm_timeout_seconds
from portal_core.envelope import unwrap_envelope
from portal_core.errors import AuthError, UpstreamError, upstream_error_details, upstream_error_message
from portal_core.http import response_json, send_request

logger = logging.getLogger(__name__)

PATIENT_PORTAL_HEADER = "is-patient-portal"


@dataclass
class CrmResult:
    """Outcome of one CRM call.

    `data` is the unwrapped payload (`envelope["data"]` when present, else the
    envelope), `envelope` the parsed body as received. On failure `status`
    mirrors the upstream and `message`/`details` carry what it said.
    """

    ok: bool
    status: int
    data: Any = None
    envelope: Any = None
    message: str | None = None
    details: Any = None
    response: httpx.Response | None = None

    def raise_for_error(self, message: str | None = None) -> CrmResult:
        if not self.ok:
            raise UpstreamError(
                message or self.message or "CRM request failed",
                status_code=self.status,
                details=self.details if message is None else self.message,
            )
        return self

    def unwrap(self, message: str | None = None) -> Any:
        return self.raise_for_error(message).data


def crm_headers(auth_token: str, extra_headers: dict[str, str] | None = None) -> dict[str, str]:
    headers = {
        "Authorization": f"Bearer {auth_token}",
        PATIENT_PORTAL_HEADER: "true",
        "Accept": "application/json",
    }
    if extra_headers:
        headers.update(extra_headers)
    return headers


def call_crm(
    path: str,
    *,
    auth_token: str | None,
    method: str = "GET",
    body: Any = None,
    params: dict[str, Any] | None = None,
    extra_headers: dict[str, str] | None = None,
    form: dict[str, Any] | None = None,
    files: Any = None,
    raw: bool = False,
) -> CrmResult:
    if not auth_token:
        raise AuthError("Not authenticated")
    url = f"{crm_host()}{path}"

    response = send_request(
        method,
        url,
        service="CRM",
        timeout=crm_timeout_seconds(),
        headers=crm_headers(auth_token, extra_headers),
        params=params,
        json=body,
        data=form,
        files=files,
    )

    if response.status_code >= 400:
        message = upstream_error_message(response)
        logger.warning("CRM %s %s failed with %s: %s", method, path, response.status_code, message)
        return CrmResult(
            ok=False,
            status=response.status_code,
            message=message,
            details=upstream_error_details(response),
            response=response,
        )

    if raw:
        return CrmResult(ok=True, status=response.status_code, response=response)

    envelope = response_json(response)
    if envelope is None and response.content:
        envelope = response.text
    return CrmResult(
        ok=True,
        status=response.status_code,
        data=unwrap_envelope(envelope),
        envelope=envelope,
        response=response,
    )
