"""PayPal REST (Orders v2) client."""

from typing import Any

import httpx

from pawdia.core.config import get_settings
from pawdia.core.exceptions import BadRequestError, UpstreamError
from pawdia.core.logging import get_logger

log = get_logger(__name__)

PROVIDER = "paypal"
TIMEOUT_SECONDS = 30.0

# Transmission headers PayPal sends with every webhook delivery.
WEBHOOK_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def _require_credentials() -> tuple[str, str]:
    settings = get_settings()
    if not settings.paypal_client_id or not settings.paypal_client_secret:
        raise BadRequestError("Payments not configured")
    return settings.paypal_client_id, settings.paypal_client_secret


async def _request(method: str, path: str, **kwargs: Any) -> dict[str, Any]:
    url = f"{get_settings().paypal_base_url}{path}"
    try:
        async with httpx.AsyncClient(timeout=TIMEOUT_SECONDS) as client:
            resp = await client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        log.warning("paypal_transport_error", path=path, error=str(e))
        raise UpstreamError("PayPal unreachable", provider=PROVIDER) from e
    if resp.status_code >= 400:
        log.warning("paypal_error", path=path, status_code=resp.status_code, body=resp.text[:500])
        raise UpstreamError(
            "PayPal request failed",
            provider=PROVIDER,
            details={"status_code": resp.status_code},
        )
    return resp.json()


async def get_access_token() -> str:
    client_id, client_secret = _require_credentials()
    data = await _request(
        "POST",
        "/v1/oauth2/token",
        auth=(client_id, client_secret),
        data={"grant_type": "client_credentials"},
        headers={"Accept": "application/json"},
    )
    token = data.get("access_token")
    if not token:
        raise UpstreamError("PayPal auth returned no token", provider=PROVIDER)
    return token


def order_body(amount: str, currency: str, name: str, description: str) -> dict[str, Any]:
    """Orders v2 body for one item; the buyer comes back to the frontend after approval."""
    frontend = get_settings().frontend_url.rstrip("/")
    return {
        "intent": "CAPTURE",
        "purchase_units": [
            {
                "amount": {
                    "currency_code": currency,
                    "value": amount,
                    "breakdown": {"item_total": {"currency_code": currency, "value": amount}},
                },
                "items": [
                    {
                        "name": name,
                        "description": description,
                        "quantity": "1",
                        "unit_amount": {"currency_code": currency, "value": amount},
                    }
                ],
            }
        ],
        "application_context": {
            "return_url": f"{frontend}/payment/success",
            "cancel_url": f"{frontend}/payment/cancel",
            "brand_name": "Pawdia AI Portraits",
            "user_action": "PAY_NOW",
        },
    }


async def create_order(amount: str, currency: str, name: str, description: str) -> dict[str, Any]:
    """Create a CAPTURE-intent order for a single item. Returns PayPal's order JSON."""
    token = await get_access_token()
    return await _request(
        "POST",
        "/v2/checkout/orders",
        json=order_body(amount, currency, name, description),
        headers={"Authorization": f"Bearer {token}"},
    )


async def capture_order(order_id: str) -> dict[str, Any]:
    token = await get_access_token()
    return await _request(
        "POST",
        f"/v2/checkout/orders/{order_id}/capture",
        headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
    )


async def verify_webhook_signature(headers: dict[str, str], event: dict[str, Any]) -> bool:
    """Ask PayPal to verify a webhook delivery against the configured webhook id."""
    webhook_id = get_settings().paypal_webhook_id
    if not webhook_id:
        raise BadRequestError("Webhook id not configured")
    lowered = {k.lower(): v for k, v in headers.items()}
    body: dict[str, Any] = {name: lowered.get(header, "") for name, header in WEBHOOK_HEADERS.items()}
    body["webhook_id"] = webhook_id
    body["webhook_event"] = event
    token = await get_access_token()
    data = await _request(
        "POST",
        "/v1/notifications/verify-webhook-signature",
        json=body,
        headers={"Authorization": f"Bearer {token}"},
    )
    return data.get("verification_status") == "SUCCESS"


def approval_url(order: dict[str, Any]) -> str | None:
    for link in order.get("links") or []:
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href")
    return None


def capture_id(capture: dict[str, Any]) -> str | None:
    for unit in capture.get("purchase_units") or []:
        for c in (unit.get("payments") or {}).get("captures") or []:
            if c.get("id"):
                return c["id"]
    return None
