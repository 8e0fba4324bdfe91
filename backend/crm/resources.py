"""Shape mapping for CRM responses.

The CRM answers the same resource in several layouts (`{status, data: {x}}`,
`{status, x}`, a bare list). Each function below accepts the parsed envelope
and returns one normalized shape. When nothing recognisable is found the raw
payload is handed back so callers can still inspect it.
"""

from __future__ import annotations

from typing import Any

from portal_core.envelope import first_present


def _as_list(value: Any) -> list[Any] | None:
    return value if isinstance(value, list) else None


def normalize_profile(envelope: Any) -> Any:
    user = first_present(envelope, "user", "data.user", "userData", "data.userData")
    if isinstance(user, dict):
        return user
    data = first_present(envelope, "data")
    if isinstance(data, dict):
        return data
    return envelope


def normalize_order_list(envelope: Any) -> Any:
    for candidate in (
        first_present(envelope, "data.orders.data"),
        first_present(envelope, "data.data"),
        first_present(envelope, "orders.data"),
        first_present(envelope, "orders"),
        first_present(envelope, "data.orders"),
        first_present(envelope, "data"),
        envelope,
    ):
        items = _as_list(candidate)
        if items is not None:
            return items
    return envelope


def normalize_paginated_orders(envelope: Any) -> dict[str, Any]:
    orders = normalize_order_list(envelope)
    pagination = first_present(envelope, "data.pagination", "pagination", "data.orders.pagination")
    if isinstance(envelope, dict) and pagination is None:
        orders_block = first_present(envelope, "data.orders", "orders")
        if isinstance(orders_block, dict):
            meta = {k: v for k, v in orders_block.items() if k != "data"}
            pagination = meta or None
    return {"orders": orders if isinstance(orders, list) else [], "pagination": pagination}


def normalize_subscription_list(envelope: Any) -> Any:
    for path in ("data.subscriptions", "subscriptions", "data.data.subscriptions", "data"):
        items = _as_list(first_present(envelope, path))
        if items is not None:
            return items
    return envelope


def normalize_subscription(envelope: Any) -> Any:
    subscription = first_present(
        envelope,
        "subscriptions.0",
        "data.subscriptions.0",
        "data.subscription",
        "subscription",
    )
    if isinstance(subscription, dict):
        return subscription
    data = first_present(envelope, "data")
    if isinstance(data, dict) and "id" in data:
        return data
    return envelope


def find_subscription(envelope: Any, subscription_id: str) -> dict[str, Any] | None:
    items = normalize_subscription_list(envelope)
    if not isinstance(items, list):
        return None
    for item in items:
        if isinstance(item, dict) and str(item.get("id")) == str(subscription_id):
            return item
    return None


def count_subscriptions(envelope: Any) -> int:
    count = first_present(envelope, "data.count", "count")
    if isinstance(count, int):
        return count
    if isinstance(count, str) and count.isdigit():
        return int(count)
    items = normalize_subscription_list(envelope)
    return len(items) if isinstance(items, list) else 0


def normalize_consultations(envelope: Any) -> dict[str, Any]:
    for path in ("data.consultations", "consultations", "data"):
        items = _as_list(first_present(envelope, path))
        if items is not None:
            count = first_present(envelope, "data.count", "count")
            return {"consultations": items, "count": count if isinstance(count, int) else len(items)}
    if isinstance(envelope, list):
        return {"consultations": envelope, "count": len(envelope)}
    return {"consultations": [], "count": 0}


def normalize_prescriptions(envelope: Any) -> Any:
    data = first_present(envelope, "data")
    if isinstance(data, dict):
        return data
    if isinstance(data, list):
        return {"data": data}
    if isinstance(envelope, list):
        return {"data": envelope}
    return envelope


def normalize_meetings(envelope: Any) -> list[Any]:
    for path in ("meetings", "data.meetings", "data", "collection"):
        items = _as_list(first_present(envelope, path))
        if items is not None:
            return items
    if isinstance(envelope, list):
        return envelope
    return []


def profile_email(profile: Any) -> str | None:
    email = first_present(profile, "email", "user_email", "user.email")
    return str(email) if email else None
