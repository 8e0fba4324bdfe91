from __future__ import annotations

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

from sessions import AutoLoginTokenStore


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_token_is_single_use():
    store = AutoLoginTokenStore()
    grant = store.issue("9001")

    assert store.consume(grant.token) == "9001"
    assert store.consume(grant.token) is None


def test_expired_token_is_rejected():
    clock = FakeClock()
    store = AutoLoginTokenStore(clock=clock)
    grant = store.issue("9001", expiration_hours=2)

    clock.now += timedelta(hours=2)

    assert store.consume(grant.token) is None
    assert len(store) == 0


def test_issue_purges_expired_grants():
    clock = FakeClock()
    store = AutoLoginTokenStore(clock=clock)
    store.issue("1", expiration_hours=0.5)
    clock.now += timedelta(hours=1)

    fresh = store.issue("2")

    assert len(store) == 1
    assert store.consume(fresh.token) == "2"


def test_unknown_token_is_rejected():
    assert AutoLoginTokenStore().consume("not-a-token") is None


def test_link_carries_redirect_only_when_given():
    store = AutoLoginTokenStore()
    plain = store.issue("9001")
    redirected = store.issue("9001", redirect="/orders?tab=open")

    assert "redirect" not in parse_qs(urlsplit(plain.link("https://portal.test/")).query)
    query = parse_qs(urlsplit(redirected.link("https://portal.test")).query)
    assert query["redirect"] == ["/orders?tab=open"]
    assert redirected.link("https://portal.test").startswith("https://portal.test/auto-login?token=")
    assert plain.token != redirected.token
