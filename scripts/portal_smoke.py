#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from fastapi.testclient import TestClient

CRM = "https://crm.smoke"
STORE = "https://shop.smoke"

SMOKE_ENV = {
  "CRM_HOST": CRM,
  "BASE_URL": STORE,
  "CONSUMER_KEY": "ck_smoke",
  "CONSUMER_SECRET": "cs_smoke",
  "PORTAL_HOST": "https://portal.smoke",
  "NEXT_PUBLIC_ROCKY_API_URL": "https://store.smoke",
}

USER = {"id": 501, "wp_user_id": 9001, "email": "smoke@example.com"}

CANNED: dict[tuple[str, str], tuple[int, Any, dict[str, str]]] = {
  ("POST", "/api/crm-user/login"): (200, {"token": "smoke-token", "user": USER}, {}),
  ("GET", "/api/crm-users/9001/edit/personal-profile"): (200, {"status": True, "user": USER}, {}),
  ("GET", "/api/crm-orders/list"): (200, {"status": True, "data": {"orders": {"data": [{"id": 1}]}}}, {}),
  ("GET", "/api/user/subscriptions/9001"): (200, {"status": True, "data": {"subscriptions": [{"id": 77}]}}, {}),
  ("GET", "/wp-json/wc/store/cart"): (200, {"items": [], "items_count": 0}, {"Nonce": "smoke-nonce"}),
}


@dataclass
class Scenario:
  name: str
  method: str
  path: str
  expected_status: int = 200
  body: dict[str, Any] | None = None
  expected_keys: list[str] = field(default_factory=list)


def fake_upstream(request: httpx.Request) -> httpx.Response:
  canned = CANNED.get((request.method, request.url.path))
  if canned is None:
    return httpx.Response(404, json={"message": f"No smoke fixture for {request.method} {request.url.path}"})
  status, payload, headers = canned
  return httpx.Response(status, json=payload, headers=headers)


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  for key, value in SMOKE_ENV.items():
    os.environ.setdefault(key, value)

  http_module = importlib.import_module("portal_core.http")
  http_module.build_client = lambda timeout=None: httpx.Client(
    transport=httpx.MockTransport(fake_upstream),
    timeout=timeout or 5.0,
  )

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  scenarios = [
    Scenario(
      name="Login",
      method="POST",
      path="/api/auth/login",
      body={"email": USER["email"], "password": "smoke-password"},
      expected_keys=["token", "user"],
    ),
    Scenario(name="Profile", method="GET", path="/api/user/profile", expected_keys=["user"]),
    Scenario(name="Orders", method="GET", path="/api/orders", expected_keys=["orders"]),
    Scenario(name="Subscriptions", method="GET", path="/api/user/subscriptions", expected_keys=["data"]),
    Scenario(name="Cart", method="GET", path="/api/cart", expected_keys=["items"]),
    Scenario(
      name="Checkout URL",
      method="GET",
      path="/api/checkout-url?productId=30&variationId=31",
      expected_keys=["checkoutUrl"],
    ),
    Scenario(name="Logout", method="POST", path="/api/auth/logout", expected_keys=["message"]),
    Scenario(name="Orders After Logout", method="GET", path="/api/orders", expected_status=401),
  ]

  results: list[dict[str, Any]] = []

  with TestClient(backend_module.app) as client:
    for scenario in scenarios:
      response = client.request(scenario.method, scenario.path, json=scenario.body)
      try:
        body: Any = response.json()
      except ValueError:
        body = {"raw": response.text[:500]}

      missing = [key for key in scenario.expected_keys if not isinstance(body, dict) or key not in body]
      scenario_result: dict[str, Any] = {
        "name": scenario.name,
        "request": f"{scenario.method} {scenario.path}",
        "expected_status": scenario.expected_status,
        "status_code": response.status_code,
        "body": body,
        "pass": response.status_code == scenario.expected_status and not missing,
      }
      if response.status_code != scenario.expected_status:
        scenario_result["error"] = f"Expected {scenario.expected_status}, got {response.status_code}"
      elif missing:
        scenario_result["error"] = f"Missing keys: {', '.join(missing)}"
      results.append(scenario_result)

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Patient Portal Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- CRM_HOST: `{os.getenv('CRM_HOST')}`",
    f"- BASE_URL: `{os.getenv('BASE_URL')}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Scenario Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Request: `{item['request']}`")
    report_lines.append(f"- Expected status: `{item['expected_status']}`")
    report_lines.append(f"- Status code: `{item['status_code']}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    report_lines.append("- Response payload:")
    report_lines.append("```json")
    report_lines.append(json.dumps(item.get("body"), indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "PORTAL_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} scenarios.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
