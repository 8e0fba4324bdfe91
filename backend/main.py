from __future__ import annotations

import hmac
import logging
import math
from typing import Any

import uvicorn
from fastapi import Body, Depends, FastAPI, Header, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.datastructures import UploadFile

from commerce import EMPTY_LOCAL_CART, CartItem, StoreCartClient, TTLCache, WooCommerceClient, build_cart_item, build_checkout_url
from crm import (
    call_crm,
    count_subscriptions,
    find_subscription,
    normalize_consultations,
    normalize_order_list,
    normalize_paginated_orders,
    normalize_prescriptions,
    normalize_profile,
    normalize_subscription,
    profile_email,
    service_account_token,
)
from messenger import MessengerSessionChain, ServiceTokenCache
from partners import fetch_meetings, retrieve_address
from portal_core import (
    AuthError,
    ForbiddenError,
    NotFoundError,
    PortalError,
    SessionCookies,
    UpstreamError,
    ValidationError,
    clear_session_cookies,
    first_present,
    friendly_status_message,
    parse_session_cookies,
    set_cart_nonce_cookie,
    set_session_cookies,
)
from portal_core.config import (
    allowed_origins,
    bootstrap_local_env,
    configure_logging,
    crm_host,
    crm_timeout_seconds,
    env_float,
    env_str,
    messenger_settings,
    portal_host,
    rocky_api_url,
    store_base_url,
    woocommerce_settings,
)
from portal_core.errors import upstream_error_message
from portal_core.http import mask_card_number, response_json, send_request
from portal_core.validation import is_blank, iso_date, positive_int, require_fields
from sessions import MAX_EXPIRATION_HOURS, AutoLoginTokenStore

bootstrap_local_env()
configure_logging()

logger = logging.getLogger("portal.api")

PROFILE_UPDATE_FIELDS = {"phone_number", "photo_id", "insurance_card_image"}
PROFILE_FILE_FIELDS = {"photo_id", "insurance_card_image"}
PAYMENT_PROFILE_FIELDS = (
    "profile_id",
    "customer_id",
    "name_on_card",
    "card_number",
    "expiry_month",
    "expiry_year",
    "cvc",
)
SHIPPING_ADDRESS_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "address_1",
    "address_2",
    "city",
    "state",
    "postcode",
    "country",
)


class LoginPayload(BaseModel):
    email: str | None = None
    password: str | None = None


class QuantityUpdatePayload(BaseModel):
    line_item_id: Any = None
    quantity: Any = None


class RefillDatePayload(BaseModel):
    subscription_id: Any = None
    refill_date: Any = None


class RenewalPayload(BaseModel):
    subscription_id: Any = None


class RefillShippingPayload(BaseModel):
    subscription_id: Any = None
    shipping_address: dict[str, Any] | None = None


class PauseCancelPayload(BaseModel):
    subscriptionId: Any = None
    answers: Any = None


class MedicalProfilePayload(BaseModel):
    crm_user_id: Any = None
    slug: str | None = None
    meta_value: Any = None
    id: Any = None


class PasswordUpdatePayload(BaseModel):
    old_password: str | None = None
    new_password: str | None = None


class DualAddressPayload(BaseModel):
    billing: dict[str, Any] | None = None
    shipping: dict[str, Any] | None = None


class CartItemPayload(BaseModel):
    productId: Any = None
    variationId: Any = None
    quantity: Any = 1
    size: str | None = None
    color: str | None = None
    meta_data: list[dict[str, Any]] = Field(default_factory=list)


class AddressDetailsPayload(BaseModel):
    addressId: str | None = None
    searchTerm: str | None = None


class PortalApp:
    """Per-process state. Everything else is rebuilt per request from the environment."""

    def __init__(self) -> None:
        self.messenger_tokens = ServiceTokenCache()
        self.variations_cache = TTLCache()
        self.auto_login = AutoLoginTokenStore()

    def messenger(self) -> MessengerSessionChain:
        return MessengerSessionChain(messenger_settings(), self.messenger_tokens)

    def woocommerce(self) -> WooCommerceClient:
        return WooCommerceClient(woocommerce_settings(), self.variations_cache)

    def store_cart(self) -> StoreCartClient:
        return StoreCartClient(store_base_url())


container = PortalApp()
app = FastAPI(title="Patient Portal BFF")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PortalError)
async def _portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed (%s): %s", request.method, request.url.path, exc.status_code, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.as_envelope()))


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request body", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


def session_cookies(request: Request) -> SessionCookies:
    return parse_session_cookies(request.headers.get("cookie"))


def _require_token(session: SessionCookies) -> str:
    if not session.auth_token:
        raise AuthError("Not authenticated. Please log in.")
    return session.auth_token


def _require_user_id(session: SessionCookies) -> str:
    if not session.user_id:
        raise AuthError("User not authenticated. userId not found in cookies.")
    return session.user_id


def _require_wp_user_id(session: SessionCookies) -> str:
    if not session.wp_user_id:
        raise AuthError("User not authenticated. wp_user_id not found in cookies.")
    return session.wp_user_id


def _crm_user_id(request: Request, session: SessionCookies) -> str:
    from_query = request.query_params.get("crmUserID") or request.query_params.get("id")
    return from_query or _require_user_id(session)


def _as_int(value: Any, field_name: str) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} must be a number") from exc


def _fetch_profile(user_id: str, token: str) -> Any:
    result = call_crm(f"/api/crm-users/{user_id}/edit/personal-profile", auth_token=token)
    return normalize_profile(result.unwrap())


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# Auth


@app.post("/api/auth/login")
def login(payload: LoginPayload, response: Response) -> dict[str, Any]:
    if is_blank(payload.email) or is_blank(payload.password):
        raise ValidationError("Email and password are required")
    host = crm_host()
    upstream = send_request(
        "POST",
        f"{host}/api/crm-user/login",
        service="CRM",
        timeout=crm_timeout_seconds(),
        headers={"Accept": "application/json", "is-patient-portal": "true"},
        json={"email": payload.email, "password": payload.password},
    )
    if upstream.status_code >= 400:
        raise UpstreamError(upstream_error_message(upstream), status_code=upstream.status_code)

    data = response_json(upstream)
    token = first_present(data, "token", "data.token")
    user = first_present(data, "user", "data.user")
    if not token or not isinstance(user, dict):
        raise UpstreamError("Invalid response from authentication server", status_code=500)

    user_id = user.get("wp_user_id") or user.get("id")
    set_session_cookies(
        response,
        user_id=str(user_id) if user_id is not None else None,
        auth_token=str(token),
        wp_user_id=str(user["wp_user_id"]) if user.get("wp_user_id") else None,
        user_email=user.get("email"),
    )
    logger.info("User %s logged in", user_id)
    return {"success": True, "token": token, "user": user}


@app.post("/api/auth/logout")
def logout(response: Response) -> dict[str, Any]:
    clear_session_cookies(response)
    return {"success": True, "message": "Logged out successfully"}


@app.get("/api/user/auto-login-link")
def auto_login_link(
    wp_user_id: str | None = Query(default=None),
    expiration_hour: float = Query(default=1),
    redirect: str | None = Query(default=None),
    authorization: str | None = Header(default=None),
) -> dict[str, Any]:
    bearer = (authorization or "").replace("Bearer", "", 1).strip()
    if not bearer:
        raise AuthError("Missing or invalid authorization header")
    if is_blank(wp_user_id):
        raise ValidationError("wp_user_id is required")
    if not math.isfinite(expiration_hour) or not 0 < expiration_hour <= MAX_EXPIRATION_HOURS:
        raise ValidationError(f"expiration_hour must be between 0 and {MAX_EXPIRATION_HOURS}")

    shared_secret = env_str("CRM_API_TOKEN")
    if not (shared_secret and hmac.compare_digest(bearer, shared_secret)):
        result = call_crm("/api/user/profile", auth_token=bearer)
        if not result.ok:
            if result.status == 401:
                raise AuthError("Invalid authorization token")
            result.raise_for_error("Failed to verify authorization token")

    grant = container.auto_login.issue(str(wp_user_id), expiration_hours=expiration_hour, redirect=redirect)
    return {
        "success": True,
        "autoLoginLink": grant.link(portal_host()),
        "token": grant.token,
        "expiresAt": grant.expires_at.isoformat(),
    }


@app.get("/api/user/verify-auto-login")
def verify_auto_login(
    response: Response,
    token: str | None = Query(default=None),
    wp_user_id: str | None = Query(default=None),
) -> dict[str, Any]:
    if is_blank(token) or is_blank(wp_user_id):
        raise ValidationError("Missing required parameters: token and wp_user_id")
    verified = container.auto_login.consume(str(token))
    if not verified:
        raise AuthError("Invalid or expired auto-login token")
    if verified != wp_user_id:
        raise ForbiddenError("User ID mismatch")

    user_data: Any = {"id": wp_user_id}
    host = env_str("CRM_HOST").rstrip("/")
    service_token = service_account_token(host) if host else None
    if service_token:
        result = call_crm(f"/api/crm-users/{wp_user_id}/edit/personal-profile", auth_token=service_token)
        if result.ok:
            user_data = normalize_profile(result.envelope)
        else:
            logger.warning("Could not load profile for auto-login user %s: %s", wp_user_id, result.message)

    crm_id = user_data.get("id") if isinstance(user_data, dict) else None
    set_session_cookies(
        response,
        user_id=str(crm_id or wp_user_id),
        wp_user_id=str(wp_user_id),
        user_email=profile_email(user_data),
    )
    return {"success": True, "userData": user_data}


# Profile


@app.get("/api/user/profile")
def get_profile(session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    user_id = _require_user_id(session)
    token = _require_token(session)
    return {"status": True, "user": _fetch_profile(user_id, token)}


async def _profile_update_parts(request: Request) -> tuple[dict[str, Any], dict[str, Any]]:
    content_type = request.headers.get("content-type", "")
    fields: dict[str, Any] = {}
    files: dict[str, Any] = {}
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        for name, value in form.multi_items():
            if name not in PROFILE_UPDATE_FIELDS:
                raise ValidationError(f"Field '{name}' cannot be updated")
            if isinstance(value, UploadFile):
                if name not in PROFILE_FILE_FIELDS:
                    raise ValidationError(f"Field '{name}' does not accept files")
                content = await value.read()
                files[name] = (value.filename or name, content, value.content_type or "application/octet-stream")
            else:
                fields[name] = value
    else:
        try:
            body = await request.json()
        except ValueError as exc:
            raise ValidationError("Invalid JSON body") from exc
        if not isinstance(body, dict):
            raise ValidationError("Invalid JSON body")
        for name, value in body.items():
            if name not in PROFILE_UPDATE_FIELDS:
                raise ValidationError(f"Field '{name}' cannot be updated")
            fields[name] = value
    if not fields and not files:
        raise ValidationError("No profile fields provided")
    return fields, files


@app.post("/api/user/profile")
async def update_profile(request: Request, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    user_id = _require_user_id(session)
    token = _require_token(session)
    fields, files = await _profile_update_parts(request)
    path = f"/api/crm-users/{user_id}/edit/personal-profile"
    if files:
        result = call_crm(path, auth_token=token, method="POST", form=fields, files=files)
    else:
        result = call_crm(path, auth_token=token, method="POST", body=fields)
    envelope = result.raise_for_error().envelope
    return {"status": True, "message": "Profile updated successfully", "user": normalize_profile(envelope)}


# Orders


@app.get("/api/orders")
def list_orders(session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    token = _require_token(session)
    result = call_crm(
        "/api/crm-orders/list",
        auth_token=token,
        params={"per_page": 10, "order_type": "subscription"},
    )
    return {"success": True, "orders": normalize_order_list(result.raise_for_error().envelope)}


@app.get("/api/user/orders")
def user_orders(page: int = Query(default=1), session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    user_id = _require_user_id(session)
    token = _require_token(session)
    if page < 1:
        raise ValidationError("page must be a positive integer")
    params = {"page": page} if page > 1 else None
    result = call_crm(f"/api/user/orders/{user_id}", auth_token=token, params=params)
    return {
        "status": True,
        "message": "Orders fetched successfully",
        "data": normalize_paginated_orders(result.raise_for_error().envelope),
    }


@app.get("/api/user/orders/manage/{order_id}")
def manage_order(order_id: str, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    token = _require_token(session)
    result = call_crm(f"/api/user/order/manage/{order_id}", auth_token=token)
    return {"success": True, "data": result.unwrap()}


@app.get("/api/user/order/invoice/download/{order_id}")
def download_invoice(order_id: str, session: SessionCookies = Depends(session_cookies)) -> Response:
    token = _require_token(session)
    result = call_crm(
        f"/api/user/order/invoice/download/{order_id}",
        auth_token=token,
        extra_headers={"Accept": "application/pdf"},
        raw=True,
    )
    upstream = result.raise_for_error("Failed to download invoice").response
    headers = {
        "Content-Disposition": upstream.headers.get(
            "content-disposition", f'attachment; filename="invoice-{order_id}.pdf"'
        ),
    }
    if upstream.headers.get("content-length") and not upstream.headers.get("content-encoding"):
        headers["Content-Length"] = upstream.headers["content-length"]
    return Response(
        content=upstream.content,
        media_type=upstream.headers.get("content-type") or "application/pdf",
        headers=headers,
    )


# Subscriptions


@app.get("/api/user/subscriptions")
def list_subscriptions(session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    wp_user_id = _require_wp_user_id(session)
    token = _require_token(session)
    result = call_crm(f"/api/user/subscriptions/{wp_user_id}", auth_token=token)
    return {"success": True, "data": result.raise_for_error().envelope}


@app.get("/api/user/subscriptions/count")
def subscriptions_count(session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    user_id = _require_user_id(session)
    token = _require_token(session)
    result = call_crm(f"/api/crm-users/{user_id}/subscriptions", auth_token=token)
    return {"success": True, "count": count_subscriptions(result.raise_for_error().envelope)}


@app.get("/api/user/subscription/{subscription_id}")
def get_subscription(subscription_id: str, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    token = _require_token(session)
    result = call_crm(f"/api/user/subscription/{subscription_id}", auth_token=token)
    return {"success": True, "subscription": normalize_subscription(result.raise_for_error().envelope)}


@app.put("/api/user/subscription/update/quantity/{subscription_id}")
def update_subscription_quantity(
    subscription_id: str,
    payload: QuantityUpdatePayload,
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    wp_user_id = _require_wp_user_id(session)
    token = _require_token(session)
    if is_blank(payload.line_item_id):
        raise ValidationError("line_item_id is required")
    quantity = positive_int(payload.quantity, "quantity")
    body = {
        "wp_user_id": _as_int(wp_user_id, "wp_user_id"),
        "subscription_id": _as_int(subscription_id, "subscription_id"),
        "line_item_id": _as_int(payload.line_item_id, "line_item_id"),
        "quantity": quantity,
    }
    result = call_crm(
        f"/api/user/subscription/update/quantity/{subscription_id}",
        auth_token=token,
        method="PUT",
        body=body,
    )
    return {"success": True, "message": "Subscription quantity updated", "data": result.unwrap()}


@app.post("/api/user/pause-cancel-subscription")
def pause_cancel_subscription(payload: PauseCancelPayload, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    wp_user_id = _require_wp_user_id(session)
    user_id = _require_user_id(session)
    token = _require_token(session)
    if is_blank(payload.subscriptionId):
        raise ValidationError("subscriptionId is required")
    if payload.answers is None:
        raise ValidationError("answers are required")
    body = {
        "subscriptionId": str(payload.subscriptionId),
        "wpUserId": str(wp_user_id),
        "crmUserId": str(user_id),
        "answers": payload.answers,
    }
    result = call_crm("/api/user/pause-cancel-subscription", auth_token=token, method="POST", body=body)
    return {"success": True, "data": result.unwrap()}


@app.post("/api/user/change-refill-date")
def change_refill_date(payload: RefillDatePayload, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    wp_user_id = _require_wp_user_id(session)
    token = _require_token(session)
    if is_blank(payload.subscription_id):
        raise ValidationError("subscription_id is required")
    refill_date = iso_date(payload.refill_date, "refill_date")
    body = {"wp_user_id": wp_user_id, "subscription_id": payload.subscription_id, "refill_date": refill_date}
    result = call_crm("/api/user/change-refill-date", auth_token=token, method="POST", body=body)
    return {"success": True, "message": "Refill date updated", "data": result.unwrap()}


@app.post("/api/user/refill-subscription-renewal")
def refill_subscription_renewal(payload: RenewalPayload, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    wp_user_id = _require_wp_user_id(session)
    token = _require_token(session)
    if is_blank(payload.subscription_id):
        raise ValidationError("subscription_id is required")
    body = {"wp_user_id": wp_user_id, "subscription_id": payload.subscription_id}
    result = call_crm("/api/user/refill-subscription-renewal", auth_token=token, method="POST", body=body)
    return {"success": True, "message": "Subscription renewal requested", "data": result.unwrap()}


@app.post("/api/user/update-refill-shipping-address")
def update_refill_shipping_address(
    payload: RefillShippingPayload,
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    wp_user_id = _require_wp_user_id(session)
    token = _require_token(session)
    if is_blank(payload.subscription_id):
        raise ValidationError("subscription_id is required")
    if not payload.shipping_address:
        raise ValidationError("shipping_address is required")
    require_fields(payload.shipping_address, "address_1", "city", "state", "postcode")
    address = {name: payload.shipping_address.get(name) or "" for name in SHIPPING_ADDRESS_FIELDS}
    address["country"] = address["country"] or "CA"
    body = {"wp_user_id": wp_user_id, "subscription_id": payload.subscription_id, "shipping_address": address}
    result = call_crm("/api/user/update-refill-shipping-address", auth_token=token, method="POST", body=body)
    return {"success": True, "message": "Shipping address updated", "data": result.unwrap()}


# Prescriptions


@app.get("/api/user/prescriptions")
def list_prescriptions(
    crm_user_id: str | None = Query(default=None),
    per_page: int = Query(default=10),
    crm_order_id: str | None = Query(default=None),
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    token = _require_token(session)
    if is_blank(crm_user_id):
        raise ValidationError("crm_user_id is required")
    if per_page <= 0:
        raise ValidationError("per_page must be a positive integer")
    body: dict[str, Any] = {"per_page": per_page, "crm_user_id": crm_user_id}
    if crm_order_id:
        body["crm_order_id"] = crm_order_id
    result = call_crm("/api/user/prescriptions", auth_token=token, body=body)
    return {"success": True, "data": normalize_prescriptions(result.raise_for_error().envelope)}


@app.get("/api/user/prescription/{prescription_id}")
def get_prescription(prescription_id: str, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    token = _require_token(session)
    result = call_crm(f"/api/user/prescription/{prescription_id}", auth_token=token)
    return {"success": True, "data": result.unwrap()}


# Documents


def _get_documents(user_id: str, token: str) -> dict[str, Any]:
    result = call_crm(f"/api/user/{user_id}/documents", auth_token=token)
    return {"success": True, "data": result.unwrap()}


def _save_documents(user_id: str, token: str, body: dict[str, Any]) -> dict[str, Any]:
    if not body:
        raise ValidationError("No document fields provided")
    result = call_crm(f"/api/user/{user_id}/documents", auth_token=token, method="POST", body=body)
    return {"success": True, "message": "Documents updated successfully", "data": result.unwrap()}


@app.get("/api/user/{user_id}/documents")
def get_user_documents(user_id: str, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    return _get_documents(user_id, _require_token(session))


@app.post("/api/user/{user_id}/documents")
@app.put("/api/user/{user_id}/documents")
def save_user_documents(
    user_id: str,
    body: dict[str, Any] = Body(default_factory=dict),
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    return _save_documents(user_id, _require_token(session), body)


@app.get("/api/user/documents")
def get_own_documents(request: Request, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    token = _require_token(session)
    return _get_documents(_crm_user_id(request, session), token)


@app.put("/api/user/documents")
def save_own_documents(
    request: Request,
    body: dict[str, Any] = Body(default_factory=dict),
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    token = _require_token(session)
    return _save_documents(_crm_user_id(request, session), token, body)


# Medical profile


@app.get("/api/user/medical-profile")
def get_medical_profile(request: Request, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    token = _require_token(session)
    result = call_crm(f"/api/user/{_crm_user_id(request, session)}/medical-profile", auth_token=token)
    return {"success": True, "data": result.unwrap()}


@app.post("/api/user/medical-profile")
def update_medical_profile(payload: MedicalProfilePayload, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    token = _require_token(session)
    if is_blank(payload.crm_user_id) or is_blank(payload.slug):
        raise ValidationError("crm_user_id and slug are required")
    if payload.meta_value is None:
        raise ValidationError("meta_value is required")
    body: dict[str, Any] = {
        "crm_user_id": payload.crm_user_id,
        "slug": payload.slug,
        "meta_value": payload.meta_value,
    }
    if payload.id is not None:
        body["id"] = payload.id
    result = call_crm("/api/user/medical-profile/update", auth_token=token, method="PATCH", body=body)
    if not result.ok:
        raise UpstreamError(friendly_status_message(result.status), status_code=result.status, details=result.message)
    return {"success": True, "message": "Medical profile updated", "data": result.data}


# Billing, shipping and payment


def _patch_address(kind: str, body: dict[str, Any], token: str) -> Any:
    if is_blank(body.get("id")):
        raise ValidationError(f"{kind} address id is required")
    return call_crm(f"/api/user/{kind}/address/update", auth_token=token, method="PATCH", body=body)


@app.patch("/api/user/billing/address/update")
def update_billing_address(
    body: dict[str, Any] = Body(default_factory=dict),
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    result = _patch_address("billing", body, _require_token(session))
    return {"success": True, "message": "Billing address updated", "data": result.unwrap()}


@app.patch("/api/user/shipping/address/update")
def update_shipping_address(
    body: dict[str, Any] = Body(default_factory=dict),
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    result = _patch_address("shipping", body, _require_token(session))
    return {"success": True, "message": "Shipping address updated", "data": result.unwrap()}


@app.patch("/api/user/billing-shipping/update")
def update_billing_and_shipping(payload: DualAddressPayload, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    token = _require_token(session)
    if not payload.billing or not payload.shipping:
        raise ValidationError("billing and shipping addresses are required")
    if is_blank(payload.billing.get("id")) or is_blank(payload.shipping.get("id")):
        raise ValidationError("billing and shipping address ids are required")

    billing = _patch_address("billing", payload.billing, token)
    billing.raise_for_error("Billing address update failed")
    shipping = _patch_address("shipping", payload.shipping, token)
    if not shipping.ok:
        raise UpstreamError(
            "Billing address updated but shipping address update failed",
            status_code=shipping.status,
            details=shipping.message,
            extra={"billing_updated": True, "shipping_updated": False},
        )
    return {
        "success": True,
        "message": "Billing and shipping addresses updated successfully",
        "data": {"billing": billing.data, "shipping": shipping.data},
    }


@app.patch("/api/user/payment/profiles/update")
def update_payment_profile(
    body: dict[str, Any] = Body(default_factory=dict),
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    token = _require_token(session)
    require_fields(body, *PAYMENT_PROFILE_FIELDS)
    month = _as_int(body["expiry_month"], "expiry_month")
    if not 1 <= month <= 12:
        raise ValidationError("expiry_month must be between 1 and 12")
    logger.info(
        "Updating payment profile %s (card %s)",
        body.get("profile_id"),
        mask_card_number(body.get("card_number")),
    )
    result = call_crm("/api/user/payment/profiles/update", auth_token=token, method="PATCH", body=body)
    return {"success": True, "message": "Payment profile updated", "data": result.unwrap()}


@app.get("/api/user/{user_id}/payment/profiles")
def payment_profiles(user_id: str, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    result = call_crm(f"/api/user/payment/profiles/{user_id}", auth_token=_require_token(session))
    return {"success": True, "data": result.unwrap()}


@app.get("/api/user/{user_id}/address")
def user_address(user_id: str, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    result = call_crm(f"/api/user/{user_id}/address", auth_token=_require_token(session))
    return {"success": True, "data": result.unwrap()}


@app.get("/api/user/shipping-address")
@app.get("/api/user/billing-shipping")
def shipping_addresses(request: Request, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    token = _require_token(session)
    result = call_crm(f"/api/user/{_crm_user_id(request, session)}/shipping-address", auth_token=token)
    return {"success": True, "data": result.unwrap()}


@app.post("/api/user/shipping-address")
def save_shipping_addresses(
    request: Request,
    body: dict[str, Any] = Body(default_factory=dict),
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    token = _require_token(session)
    if not body:
        raise ValidationError("No address fields provided")
    result = call_crm(
        f"/api/user/{_crm_user_id(request, session)}/shipping-address",
        auth_token=token,
        method="POST",
        body=body,
    )
    return {"success": True, "message": "Address updated successfully", "data": result.unwrap()}


@app.get("/api/user/dashboard/states")
def dashboard_states(request: Request, session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    token = _require_token(session)
    result = call_crm(f"/api/user/{_crm_user_id(request, session)}/dashboard/states", auth_token=token)
    return {"success": True, "data": result.unwrap()}


@app.post("/api/user/{user_id}/password/update")
def update_password(
    user_id: str,
    payload: PasswordUpdatePayload,
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    token = _require_token(session)
    if is_blank(payload.old_password) or is_blank(payload.new_password):
        raise ValidationError("old_password and new_password are required")
    if payload.old_password == payload.new_password:
        raise ValidationError("New password must be different from the current password")
    username = profile_email(_fetch_profile(user_id, token))
    if not username:
        raise NotFoundError("User email not found")
    result = call_crm(
        f"/api/user/{user_id}/password/update",
        auth_token=token,
        method="POST",
        body={
            "wp_username": username,
            "old_password": payload.old_password,
            "new_password": payload.new_password,
        },
    )
    return {"success": True, "message": "Password updated successfully", "data": result.unwrap()}


# Appointments and consultations


@app.get("/api/user/appointments")
def appointments(session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    user_id = _require_user_id(session)
    token = _require_token(session)
    email = profile_email(_fetch_profile(user_id, token))
    if not email:
        raise NotFoundError("User email not found")
    return {"success": True, "meetings": fetch_meetings(email)}


@app.get("/api/user/consultations")
def consultations(session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    user_id = _require_user_id(session)
    token = _require_token(session)
    result = call_crm("/api/user/consultations", auth_token=token, params={"wp_user_id": user_id})
    normalized = normalize_consultations(result.raise_for_error().envelope)
    return {"success": True, **normalized, "data": result.envelope}


# Messenger


@app.post("/api/messenger/session")
def messenger_session(session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    user_id = _require_user_id(session)
    user_session = container.messenger().open_session(user_id)
    return {"success": True, **user_session.as_dict()}


@app.get("/api/messenger/unread-count")
def messenger_unread_count(session: SessionCookies = Depends(session_cookies)) -> dict[str, Any]:
    try:
        user_id = _require_user_id(session)
        count = container.messenger().unread_count(user_id)
    except PortalError as exc:
        exc.extra.setdefault("count", 0)
        raise
    return {"success": True, "count": count}


def _subscription_prescriber(wp_user_id: str, subscription_id: str, token: str) -> Any:
    result = call_crm(f"/api/user/subscriptions/{wp_user_id}", auth_token=token)
    envelope = result.raise_for_error("Failed to fetch subscription data").envelope
    subscription = find_subscription(envelope, subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found")
    prescriber = first_present(subscription, "prescription.crm_prescriber_id")
    if not prescriber:
        raise NotFoundError("No prescription found for this subscription")
    return prescriber


@app.get("/api/messenger/subscription-thread")
def messenger_subscription_thread(
    subscriptionId: str | None = Query(default=None),
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    user_id = _require_user_id(session)
    wp_user_id = _require_wp_user_id(session)
    if is_blank(subscriptionId):
        raise ValidationError("subscriptionId is required")
    chain = container.messenger()
    prescriber = _subscription_prescriber(wp_user_id, str(subscriptionId), _require_token(session))
    reference = chain.subscription_thread(user_id, prescriber)
    return {"success": True, **reference.as_dict()}


@app.get("/api/messenger/threads/search")
def messenger_thread_search(
    subscriptionId: str | None = Query(default=None),
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    user_id = _require_user_id(session)
    wp_user_id = _require_wp_user_id(session)
    if is_blank(subscriptionId):
        raise ValidationError("subscriptionId is required")
    chain = container.messenger()
    prescriber = _subscription_prescriber(wp_user_id, str(subscriptionId), _require_token(session))
    return {"success": True, "data": chain.search_threads(f"{prescriber},{user_id}")}


@app.get("/api/messenger/threads/search-by-participants")
def messenger_search_by_participants(
    participantIds: str | None = Query(default=None),
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    user_id = _require_user_id(session)
    if is_blank(participantIds):
        raise ValidationError("participantIds is required")
    reference = container.messenger().thread_for_participants(user_id, str(participantIds))
    return {"success": True, "chatUrl": reference.chat_url, "chatId": reference.chat_id, "data": reference.thread_data}


# Cart and products


@app.get("/api/cart")
def get_cart(response: Response, session: SessionCookies = Depends(session_cookies)) -> Any:
    if not session.auth_token:
        raise AuthError("Not authenticated", extra=dict(EMPTY_LOCAL_CART))
    cart, nonce = container.store_cart().get_cart(session.auth_token)
    if nonce:
        set_cart_nonce_cookie(response, nonce)
    return cart


@app.post("/api/cart/add-item")
def add_cart_item(
    payload: CartItemPayload,
    response: Response,
    session: SessionCookies = Depends(session_cookies),
) -> dict[str, Any]:
    token = _require_token(session)
    item = build_cart_item(
        product_id=payload.productId,
        variation_id=payload.variationId,
        quantity=payload.quantity,
        size=payload.size,
        color=payload.color,
        meta_data=payload.meta_data,
    )
    cart, nonce = container.store_cart().add_item(token, session.cart_nonce, item)
    if nonce and nonce != session.cart_nonce:
        set_cart_nonce_cookie(response, nonce)
    return {"success": True, "message": "Item added to cart successfully", "cart": cart}


@app.get("/api/checkout-url")
def checkout_url(
    productId: str | None = Query(default=None),
    variationId: str | None = Query(default=None),
    size: str | None = Query(default=None),
    color: str | None = Query(default=None),
    quantity: int = Query(default=1),
) -> dict[str, Any]:
    item = CartItem(
        product_id=productId or "",
        variation_id=variationId or None,
        size=size,
        color=color,
        quantity=positive_int(quantity, "quantity"),
    )
    return {"success": True, "checkoutUrl": build_checkout_url(item, rocky_api_url()), "item": item.as_dict()}


@app.get("/api/products/id/{product_id}/full")
def product_full(product_id: str) -> dict[str, Any]:
    client = container.woocommerce()
    product = client.fetch_product(product_id)
    if product is None:
        raise NotFoundError("Product not found")
    product_type = str(product.get("type") or "simple")
    variations: list[Any] = []
    if product_type.startswith("variable"):
        variations = client.fetch_product_variations(product_id, product_type)
    return {"success": True, "product": product, "variations": variations}


# Canada Post


@app.post("/api/postcanada/address-details")
def address_details(payload: AddressDetailsPayload) -> dict[str, Any]:
    address = retrieve_address(payload.addressId, payload.searchTerm)
    return {"success": True, "address": address.as_dict()}


def serve() -> None:
    uvicorn.run(
        app,
        host=env_str("PORTAL_BIND_HOST", "127.0.0.1"),
        port=int(env_float("PORTAL_PORT", 8000)),
        log_level=env_str("PORTAL_LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    serve()
