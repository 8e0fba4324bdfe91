from .client import CrmResult, call_crm
from .resources import (
    count_subscriptions,
    find_subscription,
    normalize_consultations,
    normalize_meetings,
    normalize_order_list,
    normalize_paginated_orders,
    normalize_prescriptions,
    normalize_profile,
    normalize_subscription,
    normalize_subscription_list,
    profile_email,
)
from .service_auth import authenticate_with_crm, decode_service_password, service_account_token

__all__ = [
    "CrmResult",
    "authenticate_with_crm",
    "call_crm",
    "count_subscriptions",
    "decode_service_password",
    "find_subscription",
    "normalize_consultations",
    "normalize_meetings",
    "normalize_order_list",
    "normalize_paginated_orders",
    "normalize_prescriptions",
    "normalize_profile",
    "normalize_subscription",
    "normalize_subscription_list",
    "profile_email",
    "service_account_token",
]
