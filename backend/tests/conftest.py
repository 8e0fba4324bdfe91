from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import httpx
import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from upstream_utils import CRM, MESSENGER, STORE, FakeUpstream  # noqa: E402

TEST_ENV = {
    "CRM_HOST": CRM,
    "BASE_URL": STORE,
    "CONSUMER_KEY": "ck_test",
    "CONSUMER_SECRET": "cs_test",
    "MESSENGER_BASE_URL": MESSENGER,
    "MESSENGER_EMAIL": "bot@messenger.test",
    "MESSENGER_PASSWORD": "bot-password",
    "MESSENGER_SECRET": "messenger-secret",
    "MESSENGER_TOKEN_TTL_SECONDS": "0",
    "CALENDLY_BASE_URL": "meetings.test",
    "POSTCANADA_API_KEY": "pc-key",
    "PORTAL_HOST": "https://portal.test",
    "CRM_API_TOKEN": "shared-secret",
    "NEXT_PUBLIC_ROCKY_API_URL": "https://store.test",
}


@pytest.fixture
def portal_env(monkeypatch):
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    for key in ("CRM_API_USERNAME", "CRM_API_PASSWORD", "PORTAL_DEBUG_PAYLOADS", "PORTAL_SECURE_COOKIES"):
        monkeypatch.delenv(key, raising=False)
    return TEST_ENV


@pytest.fixture
def upstream(monkeypatch) -> FakeUpstream:
    fake = FakeUpstream()
    http_module = importlib.import_module("portal_core.http")

    def _build_client(timeout: float | None = None) -> httpx.Client:
        return httpx.Client(transport=fake.transport, timeout=timeout or 5.0)

    monkeypatch.setattr(http_module, "build_client", _build_client)
    return fake


@pytest.fixture
def backend_module(portal_env, upstream):
    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def session_headers() -> Callable[..., dict[str, str]]:
    def _make(
        token: str | None = "user-token",
        user_id: str | None = "501",
        wp_user_id: str | None = "9001",
        **extra: str,
    ) -> dict[str, str]:
        cookies = {"authToken": token, "userId": user_id, "wp_user_id": wp_user_id, **extra}
        header = "; ".join(f"{name}={value}" for name, value in cookies.items() if value is not None)
        return {"Cookie": header} if header else {}

    return _make
