from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import unquote

from fastapi import Response

from .config import env_flag

SESSION_MAX_AGE = 7 * 24 * 60 * 60
CART_NONCE_MAX_AGE = 24 * 60 * 60

USER_ID_COOKIE = "userId"
WP_USER_ID_COOKIE = "wp_user_id"
USER_EMAIL_COOKIE = "userEmail"
AUTH_TOKEN_COOKIE = "authToken"
TOKEN_COOKIE = "token"
CART_NONCE_COOKIE = "cart-nonce"


@dataclass(frozen=True)
class SessionCookies:
    user_id: str | None = None
    wp_user_id: str | None = None
    auth_token: str | None = None
    user_email: str | None = None
    cart_nonce: str | None = None

    def as_dict(self) -> dict[str, str | None]:
        return {
            "userId": self.user_id,
            "wpUserId": self.wp_user_id,
            "authToken": self.auth_token,
            "userEmail": self.user_email,
        }


def parse_cookie_pairs(cookie_header: str | None) -> dict[str, str]:
    """Split a raw `Cookie` header into decoded name/value pairs.

    The first occurrence of a name wins, malformed fragments are skipped and
    nothing here ever raises.
    """
    pairs: dict[str, str] = {}
    if not cookie_header:
        return pairs
    for fragment in cookie_header.split(";"):
        if "=" not in fragment:
            continue
        name, value = fragment.split("=", 1)
        name = name.strip()
        if not name or name in pairs:
            continue
        try:
            pairs[name] = unquote(value.strip())
        except (TypeError, ValueError):
            pairs[name] = value.strip()
    return pairs


def extract_bearer_token(cookie_header: str | None) -> str | None:
    pairs = parse_cookie_pairs(cookie_header)
    for name in (TOKEN_COOKIE, AUTH_TOKEN_COOKIE):
        value = pairs.get(name)
        if value:
            return value
    return None


def parse_session_cookies(cookie_header: str | None) -> SessionCookies:
    pairs = parse_cookie_pairs(cookie_header)
    token = pairs.get(TOKEN_COOKIE) or pairs.get(AUTH_TOKEN_COOKIE) or None
    return SessionCookies(
        user_id=pairs.get(USER_ID_COOKIE) or None,
        wp_user_id=pairs.get(WP_USER_ID_COOKIE) or None,
        auth_token=token,
        user_email=pairs.get(USER_EMAIL_COOKIE) or None,
        cart_nonce=pairs.get(CART_NONCE_COOKIE) or None,
    )


def _set(response: Response, name: str, value: str, *, max_age: int, httponly: bool) -> None:
    response.set_cookie(
        key=name,
        value=value,
        max_age=max_age,
        path="/",
        samesite="lax",
        httponly=httponly,
        secure=env_flag("PORTAL_SECURE_COOKIES"),
    )


def set_session_cookies(
    response: Response,
    *,
    user_id: str | None = None,
    auth_token: str | None = None,
    wp_user_id: str | None = None,
    user_email: str | None = None,
) -> None:
    if user_id:
        _set(response, USER_ID_COOKIE, user_id, max_age=SESSION_MAX_AGE, httponly=False)
    if wp_user_id:
        _set(response, WP_USER_ID_COOKIE, wp_user_id, max_age=SESSION_MAX_AGE, httponly=False)
    if user_email:
        _set(response, USER_EMAIL_COOKIE, user_email, max_age=SESSION_MAX_AGE, httponly=False)
    if auth_token:
        _set(response, AUTH_TOKEN_COOKIE, auth_token, max_age=SESSION_MAX_AGE, httponly=True)


def clear_session_cookies(response: Response) -> None:
    _set(response, USER_ID_COOKIE, "", max_age=0, httponly=False)
    _set(response, AUTH_TOKEN_COOKIE, "", max_age=0, httponly=True)
    _set(response, WP_USER_ID_COOKIE, "", max_age=0, httponly=False)
    _set(response, USER_EMAIL_COOKIE, "", max_age=0, httponly=False)
    _set(response, TOKEN_COOKIE, "", max_age=0, httponly=False)


def set_cart_nonce_cookie(response: Response, nonce: str) -> None:
    _set(response, CART_NONCE_COOKIE, nonce, max_age=CART_NONCE_MAX_AGE, httponly=False)
