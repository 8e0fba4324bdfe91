from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import parse_qs, urlsplit

from portal_core.config import MessengerSettings, ensure_scheme
from portal_core.envelope import first_present
from portal_core.errors import NotFoundError, UpstreamError
from portal_core.http import response_json, send_request

logger = logging.getLogger(__name__)

SESSIONS_PATH = "/crm-api/sessions"
USER_SESSIONS_PATH = "/crm-api/user-sessions"
THREAD_SEARCH_PATH = "/crm-api/threads/search"
UNREAD_PATH = "/api/messages/unread"

_CHAT_ID_PATHS = ("chats.0._id", "data.chats.0._id", "chats._id", "_id")


class ServiceTokenCache:
    """Per-process holder for the messenger service token.

    The token is not user specific, so one entry per credential set is kept
    until its TTL runs out. Concurrent misses may both log in; the last write wins.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], tuple[str, float]] = {}

    def get(self, key: tuple[str, str]) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            token, expires_at = entry
            if self._clock() >= expires_at:
                self._entries.pop(key, None)
                return None
            return token

    def put(self, key: tuple[str, str], token: str, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[key] = (token, self._clock() + ttl_seconds)

    def invalidate(self, key: tuple[str, str]) -> None:
        with self._lock:
            self._entries.pop(key, None)


@dataclass
class UserSession:
    login_url: str
    token: str | None
    user: Any = None

    def as_dict(self) -> dict[str, Any]:
        return {"loginURL": self.login_url, "token": self.token, "user": self.user}


@dataclass
class ChatReference:
    chat_id: Any
    chat_url: str
    login_url: str | None = None
    auth_token: str | None = None
    direct_chat_url: str | None = None
    thread_data: Any = field(default=None, repr=False)

    def as_dict(self) -> dict[str, Any]:
        return {
            "chatUrl": self.chat_url,
            "loginURL": self.login_url,
            "directChatUrl": self.direct_chat_url,
            "chatId": self.chat_id,
            "data": self.thread_data,
        }


def extract_chat_id(thread_data: Any) -> Any:
    return first_present(thread_data, *_CHAT_ID_PATHS)


def login_url_token(login_url: str) -> str | None:
    values = parse_qs(urlsplit(login_url).query).get("q")
    return values[0] if values else None


def build_chat_url(login_url: str, chat_id: Any, token: str | None) -> str:
    base = ensure_scheme(login_url.split("?", 1)[0]).rstrip("/")
    url = f"{base}/api/chats/{chat_id}?anotherAdminId=undefined"
    if token:
        url = f"{url}&q={token}"
    return url


class MessengerSessionChain:
    """Service auth -> user session -> action, against the messenger CRM API.

    Each step needs the previous step's output, so the calls are strictly
    sequential and any failure ends the chain with the upstream status.
    """

    def __init__(self, settings: MessengerSettings, token_cache: ServiceTokenCache | None = None) -> None:
        self.settings = settings
        self.token_cache = token_cache
        self._cache_key = (settings.base_url, settings.email)

    def _url(self, path: str) -> str:
        return f"{self.settings.base_url}{path}"

    def _headers(self, bearer: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Secret": self.settings.secret}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    def _fail(self, response: Any, message: str, **extra: Any) -> UpstreamError:
        logger.warning("Messenger step failed (%s): %s", response.status_code, message)
        return UpstreamError(message, status_code=response.status_code, details=response.text or None, extra=extra)

    def authenticate_service(self, *, use_cache: bool = True) -> str:
        if use_cache and self.token_cache is not None:
            cached = self.token_cache.get(self._cache_key)
            if cached:
                return cached
        response = send_request(
            "POST",
            self._url(SESSIONS_PATH),
            service="Messenger",
            headers=self._headers(),
            json={"email": self.settings.email, "password": self.settings.password},
        )
        if response.status_code >= 400:
            raise self._fail(response, "Failed to authenticate with messenger CRM")
        token = first_present(response_json(response), "token")
        if not token:
            raise UpstreamError("No token received from messenger CRM", status_code=500)
        if self.token_cache is not None:
            self.token_cache.put(self._cache_key, str(token), self.settings.token_ttl_seconds)
        return str(token)

    def _with_service_token(self, step: Callable[[str], Any]) -> Any:
        was_cached = self.token_cache is not None and self.token_cache.get(self._cache_key) is not None
        token = self.authenticate_service()
        try:
            return step(token)
        except UpstreamError as exc:
            if exc.status_code != 401 or not was_cached:
                raise
            # A cached service token may have been revoked upstream.
            self.token_cache.invalidate(self._cache_key)
            return step(self.authenticate_service(use_cache=False))

    def _user_session_request(self, service_token: str, user_id: str, thread_id: Any) -> Any:
        return send_request(
            "POST",
            self._url(USER_SESSIONS_PATH),
            service="Messenger",
            headers=self._headers(service_token),
            json={"user_id": user_id, "thread_id": thread_id},
        )

    def create_user_session(self, service_token: str, user_id: str, thread_id: Any = "") -> UserSession:
        response = self._user_session_request(service_token, user_id, thread_id)
        if response.status_code >= 400:
            raise self._fail(response, "Failed to get user session")
        payload = response_json(response) or {}
        login_url = first_present(payload, "loginURL")
        if not login_url:
            raise UpstreamError("No loginURL received from messenger CRM", status_code=500)
        return UserSession(
            login_url=ensure_scheme(str(login_url)),
            token=first_present(payload, "token"),
            user=first_present(payload, "user"),
        )

    def search_thread(self, service_token: str, participant_ids: str) -> tuple[Any, Any]:
        response = send_request(
            "GET",
            self._url(THREAD_SEARCH_PATH),
            service="Messenger",
            headers=self._headers(service_token),
            params={"participantIds": participant_ids},
        )
        if response.status_code >= 400:
            raise self._fail(response, "Failed to search for thread")
        thread_data = response_json(response)
        chat_id = extract_chat_id(thread_data)
        if not chat_id:
            raise NotFoundError("No chat found for these participants")
        return chat_id, thread_data

    def open_session(self, user_id: str) -> UserSession:
        return self._with_service_token(lambda token: self.create_user_session(token, user_id))

    def unread_count(self, user_id: str) -> int:
        session = self.open_session(user_id)
        if not session.token:
            raise UpstreamError("No user session token received", status_code=500, extra={"count": 0})
        response = send_request(
            "GET",
            self._url(UNREAD_PATH),
            service="Messenger",
            headers=self._headers(session.token),
        )
        if response.status_code >= 400:
            raise self._fail(response, "Failed to fetch unread messages", count=0)
        count = first_present(response_json(response), "count")
        return int(count) if isinstance(count, (int, float)) else 0

    def search_threads(self, participant_ids: str) -> Any:
        def step(token: str) -> Any:
            _, thread_data = self.search_thread(token, participant_ids)
            return thread_data

        return self._with_service_token(step)

    def thread_for_participants(self, user_id: str, participant_ids: str) -> ChatReference:
        def step(token: str) -> ChatReference:
            chat_id, thread_data = self.search_thread(token, participant_ids)
            fallback = f"{self.settings.base_url}/chat/{chat_id}"
            response = self._user_session_request(token, user_id, chat_id)
            chat_url = fallback
            if response.status_code < 400:
                login_url = first_present(response_json(response), "loginURL")
                if login_url:
                    chat_url = ensure_scheme(str(login_url))
            else:
                logger.warning("Messenger user session for chat %s failed, using direct chat URL", chat_id)
            return ChatReference(chat_id=chat_id, chat_url=chat_url, thread_data=thread_data)

        return self._with_service_token(step)

    def subscription_thread(self, user_id: str, prescriber_id: Any) -> ChatReference:
        participant_ids = f"{user_id},{prescriber_id}"

        def step(token: str) -> ChatReference:
            chat_id, thread_data = self.search_thread(token, participant_ids)
            session = self.create_user_session(token, user_id, chat_id)
            auth_token = login_url_token(session.login_url) or session.token
            return ChatReference(
                chat_id=chat_id,
                chat_url=build_chat_url(session.login_url, chat_id, auth_token),
                login_url=session.login_url,
                auth_token=auth_token,
                direct_chat_url=f"{self.settings.base_url}/api/chats/{chat_id}?anotherAdminId=undefined",
                thread_data=thread_data,
            )

        return self._with_service_token(step)
