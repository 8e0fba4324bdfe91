from __future__ import annotations

from typing import Any

import httpx

FRIENDLY_STATUS_MESSAGES = {
    400: "Invalid data provided. Please check your input and try again.",
    401: "Authentication failed. Please refresh the page and try again.",
    403: "You don't have permission to perform this action.",
    404: "The requested resource was not found.",
    422: "The data you entered is invalid or incomplete. Please check your input and try again.",
    500: "A server error occurred. Please try again later.",
}
DEFAULT_FRIENDLY_MESSAGE = "Unable to save your changes. Please try again."


class PortalError(Exception):
    """Base for every failure that is turned into a `{success: false}` envelope."""

    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        self.extra = dict(extra or {})

    def as_envelope(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "error": self.message}
        if self.details is not None:
            body["details"] = self.details
        body.update(self.extra)
        return body


class LocalConfigError(PortalError):
    status_code = 500


class AuthError(PortalError):
    status_code = 401


class ValidationError(PortalError):
    status_code = 400


class ForbiddenError(PortalError):
    status_code = 403


class NotFoundError(PortalError):
    status_code = 404


class UpstreamError(PortalError):
    """Non-2xx (or unreachable) upstream. `status_code` mirrors the upstream status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 500,
        details: Any = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        if status_code < 400:
            status_code = 500
        super().__init__(message, status_code=status_code, details=details, extra=extra)


def friendly_status_message(status_code: int) -> str:
    return FRIENDLY_STATUS_MESSAGES.get(status_code, DEFAULT_FRIENDLY_MESSAGE)


def upstream_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
        err = payload.get("error")
        if isinstance(err, dict):
            err = err.get("message")
        if isinstance(err, str) and err.strip():
            return err.strip()
    return message or friendly_status_message(response.status_code)


def upstream_error_details(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None
