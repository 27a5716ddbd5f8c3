# Overview: Payment gateway boundary; intent creation, confirmation lookup, and webhook signatures.

"""
Payment Gateway Boundary

WHY: The orchestrator must not care which processor moves the money. It
talks to a gateway object with three calls:

- open_intent(amount_cents, currency, metadata) -> GatewayIntent
- capture_confirmation(intent_id, payment_id) -> GatewayPayment
- retrieve_intent(intent_id) -> GatewayIntent

GatewayError means "we could not learn the outcome" (network, 5xx, unknown
id). A definite decline is not an error: it comes back as a payment whose
status is in FAILED_STATUSES.

The configured gateway is built once per app and cached in
app.extensions["payment_gateway"]; tests install their own object there.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass, field

import httpx
from flask import current_app


STATUS_REQUIRES_PAYMENT = "requires_payment_method"
STATUS_PROCESSING = "processing"
STATUS_SUCCEEDED = "succeeded"
STATUS_CANCELED = "canceled"
STATUS_FAILED = "failed"

FAILED_STATUSES = {STATUS_CANCELED, STATUS_FAILED}

EXTENSION_KEY = "payment_gateway"


class GatewayError(Exception):
    """The gateway could not be reached or did not give a usable answer."""
    pass


class WebhookSignatureError(Exception):
    """Webhook payload failed signature or timestamp checks."""
    pass


@dataclass
class GatewayIntent:
    id: str
    client_secret: str
    amount_cents: int
    currency: str
    status: str = STATUS_REQUIRES_PAYMENT
    metadata: dict = field(default_factory=dict)


@dataclass
class GatewayPayment:
    id: str
    intent_id: str
    amount_cents: int
    currency: str
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status in FAILED_STATUSES


# =============================================================================
# SIMULATED GATEWAY (development / demo)
# =============================================================================

class SimulatedGateway:
    """
    In-memory gateway for local development.

    Intents stay unpaid until simulate_payment() is called. With
    auto_succeed=True every intent is paid as soon as it is opened, so the
    confirm endpoint can be exercised without a card form; build_gateway only
    allows that in DEBUG or TESTING apps.
    """

    def __init__(self, auto_succeed: bool = False):
        self.auto_succeed = auto_succeed
        self.intents: dict[str, GatewayIntent] = {}

    def open_intent(self, amount_cents: int, currency: str, metadata: dict | None = None) -> GatewayIntent:
        intent_id = f"pi_sim_{secrets.token_hex(12)}"
        intent = GatewayIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret_{secrets.token_hex(12)}",
            amount_cents=amount_cents,
            currency=currency,
            status=STATUS_SUCCEEDED if self.auto_succeed else STATUS_REQUIRES_PAYMENT,
            metadata=dict(metadata or {}),
        )
        self.intents[intent_id] = intent
        return intent

    def simulate_payment(self, intent_id: str, status: str = STATUS_SUCCEEDED) -> None:
        """Stand-in for the customer completing (or abandoning) the card form."""
        intent = self.intents.get(intent_id)
        if intent is None:
            raise GatewayError(f"No such payment intent: {intent_id}")
        intent.status = status

    def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise GatewayError(f"No such payment intent: {intent_id}")
        return intent

    def capture_confirmation(self, intent_id: str, payment_id: str) -> GatewayPayment:
        # Simulated payments are identified by their intent id
        paid = self.retrieve_intent(payment_id)
        return GatewayPayment(
            id=paid.id,
            intent_id=paid.id,
            amount_cents=paid.amount_cents,
            currency=paid.currency,
            status=paid.status,
        )


# =============================================================================
# STRIPE GATEWAY
# =============================================================================

class StripeGateway:
    """
    Stripe PaymentIntents over plain HTTPS.

    The client confirms the card with the client_secret and reports back the
    payment intent id; that id is what capture_confirmation looks up.
    """

    def __init__(self, api_key: str, api_base: str = "https://api.stripe.com", timeout: float = 10.0):
        if not api_key:
            raise GatewayError("GATEWAY_API_KEY is not configured")
        self.api_base = api_base.rstrip("/")
        self.client = httpx.Client(
            base_url=self.api_base,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise GatewayError(f"Payment gateway unreachable: {exc}") from exc

        if response.status_code >= 400:
            try:
                message = response.json().get("error", {}).get("message")
            except ValueError:
                message = None
            raise GatewayError(message or f"Payment gateway returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError("Payment gateway returned an unreadable response") from exc

    @staticmethod
    def _intent_from(body: dict) -> GatewayIntent:
        return GatewayIntent(
            id=body["id"],
            client_secret=body.get("client_secret") or "",
            amount_cents=int(body["amount"]),
            currency=body.get("currency", "usd"),
            status=body.get("status", STATUS_REQUIRES_PAYMENT),
            metadata=body.get("metadata") or {},
        )

    def open_intent(self, amount_cents: int, currency: str, metadata: dict | None = None) -> GatewayIntent:
        form = {
            "amount": str(amount_cents),
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = str(value)
        return self._intent_from(self._request("POST", "/v1/payment_intents", data=form))

    def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        return self._intent_from(self._request("GET", f"/v1/payment_intents/{intent_id}"))

    def capture_confirmation(self, intent_id: str, payment_id: str) -> GatewayPayment:
        paid = self.retrieve_intent(payment_id)
        return GatewayPayment(
            id=paid.id,
            intent_id=paid.id,
            amount_cents=paid.amount_cents,
            currency=paid.currency,
            status=paid.status,
        )


def build_gateway(config) -> SimulatedGateway | StripeGateway:
    kind = (config.get("PAYMENT_GATEWAY") or "simulated").lower()
    if kind == "simulated":
        auto_succeed = bool(config.get("SIMULATED_GATEWAY_AUTO_SUCCEED")) and bool(
            config.get("DEBUG") or config.get("TESTING")
        )
        return SimulatedGateway(auto_succeed=auto_succeed)
    if kind == "stripe":
        return StripeGateway(
            api_key=config.get("GATEWAY_API_KEY", ""),
            api_base=config.get("GATEWAY_API_BASE", "https://api.stripe.com"),
            timeout=float(config.get("GATEWAY_TIMEOUT_SECONDS", 10.0)),
        )
    raise GatewayError(f"Unknown PAYMENT_GATEWAY: {kind}")


def get_gateway():
    """Return the app's gateway, building it from config on first use."""
    gateway = current_app.extensions.get(EXTENSION_KEY)
    if gateway is None:
        gateway = build_gateway(current_app.config)
        current_app.extensions[EXTENSION_KEY] = gateway
    return gateway


# =============================================================================
# WEBHOOK SIGNATURES
# =============================================================================

def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: bytes, header: str | None, secret: str, tolerance: int = 300) -> None:
    """
    Check a "t=<unix>,v1=<hex>" signature header.

    Raises WebhookSignatureError if the header is missing or malformed, no
    v1 signature matches, or the timestamp is outside tolerance seconds.
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("Missing signature header")

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Malformed signature timestamp")
        elif key == "v1":
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed signature header")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Signature mismatch")

    if tolerance and abs(time.time() - timestamp) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")
