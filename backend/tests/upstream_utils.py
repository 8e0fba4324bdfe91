from __future__ import annotations

import json
from typing import Any, Callable

import httpx

CRM = "https://crm.test"
STORE = "https://shop.test"
MESSENGER = "https://messenger.test"

Handler = Callable[[httpx.Request], httpx.Response]


class FakeUpstream:
    """Records every outbound request and answers from registered routes.

    Routes match on method plus scheme/host/path (the query string is ignored).
    Registering the same route more than once replays those responses in
    order and keeps repeating the last one.
    """

    def __init__(self) -> None:
        self.calls: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list[Any]] = {}

    def add(
        self,
        method: str,
        url: str,
        *,
        status: int = 200,
        json_body: Any = None,
        content: bytes | str | None = None,
        headers: dict[str, str] | None = None,
        handler: Handler | None = None,
    ) -> None:
        entry: Any = handler or {
            "status": status,
            "json": json_body,
            "content": content,
            "headers": headers or {},
        }
        self._routes.setdefault((method.upper(), url), []).append(entry)

    def _respond(self, entry: Any, request: httpx.Request) -> httpx.Response:
        if callable(entry):
            return entry(request)
        if entry["content"] is not None:
            return httpx.Response(entry["status"], content=entry["content"], headers=entry["headers"])
        if entry["json"] is not None:
            return httpx.Response(entry["status"], json=entry["json"], headers=entry["headers"])
        return httpx.Response(entry["status"], headers=entry["headers"])

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        key = (request.method, f"{request.url.scheme}://{request.url.host}{request.url.path}")
        entries = self._routes.get(key)
        if not entries:
            raise AssertionError(f"Unexpected upstream call: {request.method} {request.url}")
        entry = entries.pop(0) if len(entries) > 1 else entries[0]
        return self._respond(entry, request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [call for call in self.calls if f"{call.url.scheme}://{call.url.host}{call.url.path}" == url]


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8"))
