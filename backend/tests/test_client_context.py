from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from sessions import LocalStore, PortalSession, PortalSessionError
from upstream_utils import CRM

USER = {"id": 12, "wp_user_id": 9001, "email": "pat@example.com"}


def _offline_client(handler=None) -> httpx.Client:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("portal unreachable", request=request)

    return httpx.Client(base_url="http://portal.test", transport=httpx.MockTransport(handler or refuse))


def test_login_then_restore_from_cookies(client, upstream, tmp_path):
    upstream.add("POST", f"{CRM}/api/crm-user/login", json_body={"token": "crm-token", "user": USER})
    upstream.add(
        "GET",
        f"{CRM}/api/crm-users/9001/edit/personal-profile",
        json_body={"status": True, "user": {"id": 12, "email": "pat@example.com", "first_name": "Pat"}},
    )
    store = LocalStore(tmp_path / "session.json")
    session = PortalSession(client=client, store=store)

    session.login("pat@example.com", "pw")

    assert session.is_authenticated
    assert session.token == "crm-token"
    assert store.get("user") == USER

    restored = PortalSession(client=client, store=LocalStore(tmp_path / "session.json"))
    assert restored.check_auth_status() is True
    assert restored.user == {"id": 12, "email": "pat@example.com", "first_name": "Pat"}
    profile_call = upstream.calls_to(f"{CRM}/api/crm-users/9001/edit/personal-profile")[0]
    assert profile_call.headers["authorization"] == "Bearer crm-token"


def test_login_failure_keeps_session_signed_out(client, upstream):
    upstream.add("POST", f"{CRM}/api/crm-user/login", status=401, json_body={"message": "Invalid credentials"})
    session = PortalSession(client=client)

    with pytest.raises(PortalSessionError) as exc_info:
        session.login("pat@example.com", "bad")

    assert exc_info.value.status_code == 401
    assert session.error == "Invalid credentials"
    assert not session.is_authenticated


def test_logout_clears_local_state_even_when_request_fails(tmp_path):
    store = LocalStore(tmp_path / "session.json")
    store.set("token", "crm-token")
    store.set("user", USER)
    offline = _offline_client()
    offline.cookies.set("userId", "9001")
    session = PortalSession(client=offline, store=store)
    session.token = "crm-token"
    session.user_data = {"status": True, "user": USER}

    session.logout()

    assert not session.is_authenticated
    assert store.get("token") is None
    assert store.get("user") is None
    assert offline.cookies.get("userId") is None
    assert LocalStore(tmp_path / "session.json").get("token") is None


def test_offline_restore_uses_stored_user():
    store = LocalStore()
    store.set("token", "crm-token")
    store.set("user", USER)
    session = PortalSession(client=_offline_client(), store=store)

    assert session.check_auth_status() is True
    assert session.user == USER


def test_rejected_stored_token_signs_out():
    def unauthorized(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"success": False, "error": "Not authenticated. Please log in."})

    store = LocalStore()
    store.set("token", "expired")
    store.set("user", USER)
    session = PortalSession(client=_offline_client(unauthorized), store=store)

    assert session.check_auth_status() is False
    assert store.get("token") is None
    assert session.user_data is None


def test_cached_profile_is_used_only_while_fresh():
    now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    clock_now = [now]
    store = LocalStore()
    store.set(
        "userData",
        {"status": True, "user": {"id": 12}, "_timestamp": (now - timedelta(minutes=4)).isoformat()},
    )
    session = PortalSession(client=_offline_client(), store=store, clock=lambda: clock_now[0])

    assert session.refresh() == store.get("userData")
    assert session.error is not None

    clock_now[0] = now + timedelta(minutes=2)
    stale = PortalSession(client=_offline_client(), store=store, clock=lambda: clock_now[0])
    assert stale.refresh() is None
