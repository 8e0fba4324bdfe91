"""Client-side session state for the patient portal.

`PortalSession` is the Python counterpart of the browser session context: it
talks to the portal's own `/api` routes, keeps the signed-in user in memory,
mirrors it into a small JSON store standing in for local storage, and exposes
`is_authenticated` for callers that gate on it.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

USER_DATA_MAX_AGE = timedelta(minutes=5)
USER_DATA_KEY = "userData"
TOKEN_KEY = "token"
USER_KEY = "user"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PortalSessionError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LocalStore:
    """Key/value JSON file. With no path it only lives in memory."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._data: dict[str, Any] = {}
        if path is not None and path.exists():
            try:
                loaded = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                logger.warning("Ignoring unreadable session store at %s", path)
                loaded = {}
            if isinstance(loaded, dict):
                self._data = loaded

    def _flush(self) -> None:
        if self.path is None:
            return
        try:
            self.path.write_text(json.dumps(self._data), encoding="utf-8")
        except OSError:
            logger.warning("Could not persist session store at %s", self.path)

    def get(self, key: str) -> Any:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)
        self._flush()


class PortalSession:
    def __init__(
        self,
        base_url: str = "",
        *,
        client: httpx.Client | None = None,
        store: LocalStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client or httpx.Client(base_url=base_url, timeout=httpx.Timeout(30.0, connect=8.0))
        self.store = store or LocalStore()
        self._clock = clock
        self.user_data: dict[str, Any] | None = None
        self.token: str | None = None
        self.error: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_data and self.token)

    @property
    def user(self) -> dict[str, Any] | None:
        if not self.user_data:
            return None
        return self.user_data.get("user")

    def _cookie(self, name: str) -> str | None:
        return self.client.cookies.get(name)

    def _stored_user_data(self) -> dict[str, Any] | None:
        stored = self.store.get(USER_DATA_KEY)
        if not isinstance(stored, dict):
            return None
        try:
            stamped = datetime.fromisoformat(str(stored.get("_timestamp")))
        except ValueError:
            return None
        if self._clock() - stamped > USER_DATA_MAX_AGE:
            return None
        return stored

    def _remember(self, profile: dict[str, Any]) -> None:
        record = {
            "status": profile.get("status", True),
            "message": profile.get("message"),
            "user": profile.get("user"),
            "_timestamp": self._clock().isoformat(),
        }
        self.user_data = record
        self.store.set(USER_DATA_KEY, record)
        email = (profile.get("user") or {}).get("email") if isinstance(profile.get("user"), dict) else None
        if email:
            self.client.cookies.set("userEmail", str(email), path="/")

    def fetch_profile(self) -> dict[str, Any]:
        response = self.client.get("/api/user/profile")
        if response.status_code >= 400:
            raise PortalSessionError(_error_text(response), status_code=response.status_code)
        payload = response.json()
        if not isinstance(payload, dict) or not (payload.get("status") or payload.get("success")):
            raise PortalSessionError("Unexpected profile response")
        if "user" not in payload and "userData" in payload:
            payload = {**payload, "user": payload["userData"]}
        return payload

    def refresh(self) -> dict[str, Any] | None:
        try:
            profile = self.fetch_profile()
        except (PortalSessionError, httpx.HTTPError) as exc:
            self.error = str(exc)
            logger.warning("Profile refresh failed: %s", exc)
            cached = self._stored_user_data()
            if cached is not None:
                self.user_data = cached
            return self.user_data
        self._remember(profile)
        self.error = None
        return self.user_data

    def check_auth_status(self) -> bool:
        """Restore the session from cookies, falling back to the stored token and user."""
        if self._cookie("userId"):
            self.token = self.token or self.store.get(TOKEN_KEY)
            self.refresh()
            return self.is_authenticated

        stored_token = self.store.get(TOKEN_KEY)
        stored_user = self.store.get(USER_KEY)
        if not stored_token or not stored_user:
            self.user_data = None
            self.token = None
            return False

        self.token = stored_token
        try:
            profile = self.fetch_profile()
        except PortalSessionError as exc:
            if exc.status_code == 401:
                self._clear_local_state()
                return False
            self.user_data = self._stored_user_data() or {"status": True, "user": stored_user}
            return self.is_authenticated
        except httpx.HTTPError:
            self.user_data = self._stored_user_data() or {"status": True, "user": stored_user}
            return self.is_authenticated
        self._remember(profile)
        return self.is_authenticated

    def login(self, email: str, password: str) -> dict[str, Any]:
        response = self.client.post("/api/auth/login", json={"email": email, "password": password})
        payload = _json_body(response)
        if response.status_code >= 400 or not payload.get("success"):
            self.error = payload.get("error") or _error_text(response)
            raise PortalSessionError(self.error or "Login failed", status_code=response.status_code)

        user = payload.get("user") or {}
        self.token = payload.get("token")
        self.store.set(TOKEN_KEY, self.token)
        self.store.set(USER_KEY, user)
        user_id = user.get("wp_user_id") or user.get("id")
        if user_id is not None and not self._cookie("userId"):
            self.client.cookies.set("userId", str(user_id), path="/")
        self._remember({"status": True, "message": "Logged in", "user": user})
        self.error = None
        return payload

    def _clear_local_state(self) -> None:
        self.user_data = None
        self.token = None
        self.store.remove(USER_DATA_KEY, TOKEN_KEY, USER_KEY)
        self.client.cookies.clear()

    def logout(self) -> None:
        try:
            self.client.post("/api/auth/logout")
        except httpx.HTTPError as exc:
            logger.warning("Logout request failed, clearing local session anyway: %s", exc)
        finally:
            self._clear_local_state()

    def close(self) -> None:
        self.client.close()


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("message") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"
