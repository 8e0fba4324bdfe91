from .cookies import (
    SessionCookies,
    clear_session_cookies,
    extract_bearer_token,
    parse_session_cookies,
    set_cart_nonce_cookie,
    set_session_cookies,
)
from .envelope import first_present, unwrap_envelope
from .errors import (
    AuthError,
    ForbiddenError,
    LocalConfigError,
    NotFoundError,
    PortalError,
    UpstreamError,
    ValidationError,
    friendly_status_message,
    upstream_error_message,
)

__all__ = [
    "AuthError",
    "ForbiddenError",
    "LocalConfigError",
    "NotFoundError",
    "PortalError",
    "SessionCookies",
    "UpstreamError",
    "ValidationError",
    "clear_session_cookies",
    "extract_bearer_token",
    "first_present",
    "friendly_status_message",
    "parse_session_cookies",
    "set_cart_nonce_cookie",
    "set_session_cookies",
    "unwrap_envelope",
    "upstream_error_message",
]
