from __future__ import annotations

import pytest

from messenger import MessengerSessionChain, ServiceTokenCache, build_chat_url
from portal_core.config import MessengerSettings
from portal_core.errors import UpstreamError
from upstream_utils import CRM, MESSENGER, request_json

SESSIONS = f"{MESSENGER}/crm-api/sessions"
USER_SESSIONS = f"{MESSENGER}/crm-api/user-sessions"
THREAD_SEARCH = f"{MESSENGER}/crm-api/threads/search"
UNREAD = f"{MESSENGER}/api/messages/unread"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _settings(ttl: float = 300.0) -> MessengerSettings:
    return MessengerSettings(
        base_url=MESSENGER,
        email="bot@messenger.test",
        password="bot-password",
        secret="messenger-secret",
        token_ttl_seconds=ttl,
    )


def test_session_stops_after_service_auth_rejection(client, upstream, session_headers):
    upstream.add("POST", SESSIONS, status=401, json_body={"message": "bad service credentials"})

    response = client.post("/api/messenger/session", headers=session_headers())

    assert response.status_code == 401
    assert response.json()["success"] is False
    assert len(upstream.calls) == 1


def test_session_returns_login_url_for_user(client, upstream, session_headers):
    upstream.add("POST", SESSIONS, json_body={"token": "svc"})
    upstream.add(
        "POST",
        USER_SESSIONS,
        json_body={"loginURL": "chat.messenger.test/login?q=abc", "token": "user-tok", "user": {"id": 501}},
    )

    response = client.post("/api/messenger/session", headers=session_headers())

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "loginURL": "https://chat.messenger.test/login?q=abc",
        "token": "user-tok",
        "user": {"id": 501},
    }
    auth_call, session_call = upstream.calls
    assert auth_call.headers["secret"] == "messenger-secret"
    assert request_json(auth_call) == {"email": "bot@messenger.test", "password": "bot-password"}
    assert session_call.headers["authorization"] == "Bearer svc"
    assert request_json(session_call) == {"user_id": "501", "thread_id": ""}


def test_unread_count_uses_user_session_token(client, upstream, session_headers):
    upstream.add("POST", SESSIONS, json_body={"token": "svc"})
    upstream.add("POST", USER_SESSIONS, json_body={"loginURL": "https://chat.test/login", "token": "user-tok"})
    upstream.add("GET", UNREAD, json_body={"count": 3})

    response = client.get("/api/messenger/unread-count", headers=session_headers())

    assert response.json() == {"success": True, "count": 3}
    assert upstream.calls[2].headers["authorization"] == "Bearer user-tok"


def test_unread_count_failures_report_zero(client, upstream, session_headers):
    upstream.add("POST", SESSIONS, status=503, content="maintenance")

    failed = client.get("/api/messenger/unread-count", headers=session_headers())
    assert failed.status_code == 503
    assert failed.json()["count"] == 0

    anonymous = client.get("/api/messenger/unread-count")
    assert anonymous.status_code == 401
    assert anonymous.json()["count"] == 0


def test_missing_messenger_credentials_is_config_error(client, upstream, session_headers, monkeypatch):
    monkeypatch.delenv("MESSENGER_SECRET")

    response = client.post("/api/messenger/session", headers=session_headers())

    assert response.status_code == 500
    assert response.json()["error"] == "Server configuration error. Missing messenger credentials."
    assert upstream.calls == []


def test_subscription_thread_builds_chat_url(client, upstream, session_headers):
    upstream.add(
        "GET",
        f"{CRM}/api/user/subscriptions/9001",
        json_body={
            "status": True,
            "data": {"subscriptions": [{"id": 77, "prescription": {"crm_prescriber_id": 42}}]},
        },
    )
    upstream.add("POST", SESSIONS, json_body={"token": "svc"})
    upstream.add("GET", THREAD_SEARCH, json_body={"chats": [{"_id": 1256}]})
    upstream.add("POST", USER_SESSIONS, json_body={"loginURL": "https://chat.test/login?q=user-q", "token": "t"})

    response = client.get("/api/messenger/subscription-thread?subscriptionId=77", headers=session_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["chatId"] == 1256
    assert body["chatUrl"] == "https://chat.test/login/api/chats/1256?anotherAdminId=undefined&q=user-q"
    assert body["directChatUrl"] == f"{MESSENGER}/api/chats/1256?anotherAdminId=undefined"
    assert upstream.calls_to(THREAD_SEARCH)[0].url.params["participantIds"] == "501,42"
    assert request_json(upstream.calls_to(USER_SESSIONS)[0]) == {"user_id": "501", "thread_id": 1256}


def test_subscription_thread_without_prescriber_is_not_found(client, upstream, session_headers):
    upstream.add(
        "GET",
        f"{CRM}/api/user/subscriptions/9001",
        json_body={"status": True, "data": {"subscriptions": [{"id": 77}]}},
    )

    response = client.get("/api/messenger/subscription-thread?subscriptionId=77", headers=session_headers())

    assert response.status_code == 404
    assert upstream.calls_to(SESSIONS) == []


def test_search_by_participants_falls_back_to_direct_chat_url(client, upstream, session_headers):
    upstream.add("POST", SESSIONS, json_body={"token": "svc"})
    upstream.add("GET", THREAD_SEARCH, json_body={"data": {"chats": [{"_id": 88}]}})
    upstream.add("POST", USER_SESSIONS, status=500, content="session store down")

    response = client.get(
        "/api/messenger/threads/search-by-participants?participantIds=501,42",
        headers=session_headers(),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["chatUrl"] == f"{MESSENGER}/chat/88"
    assert body["chatId"] == 88
    assert body["data"] == {"data": {"chats": [{"_id": 88}]}}


def test_thread_search_without_chat_is_not_found(client, upstream, session_headers):
    upstream.add("POST", SESSIONS, json_body={"token": "svc"})
    upstream.add("GET", THREAD_SEARCH, json_body={"chats": []})

    response = client.get(
        "/api/messenger/threads/search-by-participants?participantIds=501,42",
        headers=session_headers(),
    )

    assert response.status_code == 404
    assert upstream.calls_to(USER_SESSIONS) == []


def test_token_cache_expires_and_skips_zero_ttl():
    clock = FakeClock()
    cache = ServiceTokenCache(clock=clock)
    key = (MESSENGER, "bot@messenger.test")

    cache.put(key, "never-stored", 0)
    assert cache.get(key) is None

    cache.put(key, "svc", 300)
    clock.now += 299
    assert cache.get(key) == "svc"
    clock.now += 1
    assert cache.get(key) is None


def test_cached_service_token_is_reused(portal_env, upstream):
    upstream.add("POST", SESSIONS, json_body={"token": "svc"})
    upstream.add("POST", USER_SESSIONS, json_body={"loginURL": "https://chat.test/login", "token": "u"})
    chain = MessengerSessionChain(_settings(), ServiceTokenCache())

    chain.open_session("501")
    chain.open_session("501")

    assert len(upstream.calls_to(SESSIONS)) == 1
    assert len(upstream.calls_to(USER_SESSIONS)) == 2


def test_revoked_cached_token_is_refreshed_once(portal_env, upstream):
    upstream.add("POST", SESSIONS, json_body={"token": "svc-1"})
    upstream.add("POST", SESSIONS, json_body={"token": "svc-2"})
    upstream.add("POST", USER_SESSIONS, json_body={"loginURL": "https://chat.test/login", "token": "u"})
    upstream.add("POST", USER_SESSIONS, status=401, json_body={"message": "token revoked"})
    upstream.add("POST", USER_SESSIONS, json_body={"loginURL": "https://chat.test/login", "token": "u"})
    chain = MessengerSessionChain(_settings(), ServiceTokenCache())

    chain.open_session("501")
    session = chain.open_session("501")

    assert session.token == "u"
    assert len(upstream.calls_to(SESSIONS)) == 2
    assert upstream.calls_to(USER_SESSIONS)[-1].headers["authorization"] == "Bearer svc-2"


def test_fresh_token_rejection_is_not_retried(portal_env, upstream):
    upstream.add("POST", SESSIONS, json_body={"token": "svc"})
    upstream.add("POST", USER_SESSIONS, status=401, json_body={"message": "nope"})
    chain = MessengerSessionChain(_settings(ttl=0), ServiceTokenCache())

    with pytest.raises(UpstreamError) as exc_info:
        chain.open_session("501")

    assert exc_info.value.status_code == 401
    assert len(upstream.calls) == 2


def test_chat_url_keeps_token_from_login_url():
    assert build_chat_url("chat.test/login?q=x", 5, "x") == "https://chat.test/login/api/chats/5?anotherAdminId=undefined&q=x"
    assert build_chat_url("https://chat.test/login", 5, None) == "https://chat.test/login/api/chats/5?anotherAdminId=undefined"


def test_thread_search_returns_raw_search_data(client, upstream, session_headers):
    upstream.add(
        "GET",
        f"{CRM}/api/user/subscriptions/9001",
        json_body={"subscriptions": [{"id": 77, "prescription": {"crm_prescriber_id": 42}}]},
    )
    upstream.add("POST", SESSIONS, json_body={"token": "svc"})
    upstream.add("GET", THREAD_SEARCH, json_body={"chats": [{"_id": 5, "title": "Care team"}]})

    response = client.get("/api/messenger/threads/search?subscriptionId=77", headers=session_headers())

    assert response.json() == {"success": True, "data": {"chats": [{"_id": 5, "title": "Care team"}]}}
    assert upstream.calls_to(THREAD_SEARCH)[0].url.params["participantIds"] == "42,501"
