# Overview: Flask API routes for wallet funding; parses input and returns JSON responses.

"""
Wallet Funding API Routes

WHY: Let retailers (or an employee on their behalf) top up a wallet by
card, and let the gateway tell us when the money actually arrived.

DESIGN:
- create-payment-intent is a guarded operation (fund_transfer): employees
  may be asked to verify their employee id before the intent is opened
- confirm-payment is the client's report of a finished card payment
- webhook is the gateway's signed report; it is authoritative
- Balances only change through the ledger (see wallet_ledger_service)

SECURITY:
- A wallet is readable by its owner and by admins
- Employees and admins may fund any wallet; others only their own
- Webhook requests must carry a valid signature
"""

import json

from flask import Blueprint, request, jsonify, g, current_app

from ..operations import FUND_TRANSFER
from ..validation import parse_amount_cents, ValidationError
from ..services import (
    funding_policy_service,
    payment_service,
    permission_service,
    verification_service,
    wallet_ledger_service,
)
from ..services.payment_gateway import verify_webhook_signature, WebhookSignatureError
from ..decorators import require_auth
from .errors import domain_error_response


wallet_bp = Blueprint("wallet", __name__, url_prefix="/api/wallet")


def _error(exc: Exception, log_message: str):
    response = domain_error_response(exc)
    if response is not None:
        return response
    current_app.logger.exception(log_message)
    return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# FUNDING
# =============================================================================

@wallet_bp.post("/create-payment-intent")
@require_auth
def create_payment_intent_route():
    """
    Open a payment intent to add funds to a wallet.

    Query: ?userId=<wallet owner> (defaults to the caller)

    Request body:
    {
        "amount": 50.00,  (or "amount_cents": 5000)
        "payment_method": "credit_card"  (credit_card | debit_card)
    }

    Returns:
    - 200 {client_secret, transaction_id, transaction}
    - 202 {verification_required: true, ...}: verify employee id to resume
    - 403 not permitted, 422 cap exceeded, 502 gateway error
    """
    try:
        data = request.get_json(silent=True) or {}

        raw_user_id = request.args.get("userId") or data.get("user_id")
        try:
            user_id = int(raw_user_id) if raw_user_id is not None else g.principal.id
        except (TypeError, ValueError):
            raise ValidationError("userId must be an integer")

        if not g.principal.can_act_for(user_id):
            return jsonify({"error": "Cannot add funds to another user's wallet"}), 403

        amount_cents = parse_amount_cents(data)
        payment_method = data.get("payment_method") or data.get("paymentMethod")
        payment_service.validate_funding_request(amount_cents, payment_method)

        decision = verification_service.require_verification(
            g.session_context,
            FUND_TRANSFER,
            {"user_id": user_id, "amount_cents": amount_cents, "payment_method": payment_method},
            operation_details=f"Add ${amount_cents / 100:.2f} to wallet of user {user_id}",
        )

        if not decision.executed:
            return jsonify(decision.to_dict()), 202

        result = dict(decision.result)
        result.pop("operation_type", None)
        return jsonify(result), 200

    except Exception as exc:
        return _error(exc, "Failed to create payment intent")


@wallet_bp.post("/confirm-payment")
@require_auth
def confirm_payment_route():
    """
    Confirm a card payment and credit the wallet (exactly once).

    Request body:
    {
        "transaction_id": 12,
        "payment_intent_id": "pi_..."
    }

    Returns 200 {status: "credited" | "already_processed", transaction, ledger_entry}
    """
    try:
        data = request.get_json(silent=True) or {}
        transaction_id = data.get("transaction_id") or data.get("transactionId")
        payment_intent_id = data.get("payment_intent_id") or data.get("paymentIntentId")

        if transaction_id is None or not payment_intent_id:
            return jsonify({"error": "transaction_id and payment_intent_id required"}), 400
        try:
            transaction_id = int(transaction_id)
        except (TypeError, ValueError):
            return jsonify({"error": "transaction_id must be an integer"}), 400

        result = payment_service.confirm_payment(
            transaction_id,
            payment_intent_id,
            actor=g.principal,
        )
        return jsonify(result.to_dict()), 200

    except Exception as exc:
        return _error(exc, "Failed to confirm payment")


@wallet_bp.post("/webhook")
def webhook_route():
    """
    Gateway callback. Signed with GATEWAY_WEBHOOK_SECRET ("t=..,v1=.." header).

    Always 200 once the signature checks out, so the gateway stops retrying;
    the outcome is in the body.
    """
    payload = request.get_data()
    header = request.headers.get("Stripe-Signature") or request.headers.get("X-Gateway-Signature")

    try:
        verify_webhook_signature(
            payload,
            header,
            current_app.config.get("GATEWAY_WEBHOOK_SECRET", ""),
            tolerance=current_app.config.get("GATEWAY_WEBHOOK_TOLERANCE_SECONDS", 300),
        )
    except WebhookSignatureError as exc:
        permission_service.log_security_event(
            user_id=None,
            event_type="WEBHOOK_SIGNATURE_INVALID",
            success=False,
            resource=request.path,
            action="webhook",
            reason=str(exc),
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
        return jsonify({"error": "Invalid signature"}), 400

    try:
        event = json.loads(payload)
    except ValueError:
        return jsonify({"error": "Invalid JSON payload"}), 400

    try:
        outcome = payment_service.handle_gateway_event(event)
        return jsonify({"received": True, "outcome": outcome}), 200
    except Exception as exc:
        return _error(exc, "Failed to process gateway webhook")


# =============================================================================
# READS
# =============================================================================

@wallet_bp.get("/permissions/<int:user_id>")
@require_auth
def get_permissions_route(user_id: int):
    """Funding permission as the wallet UI shows it (defaults if none set)."""
    try:
        permission_service.require_self_or_admin(g.principal, user_id)
        return jsonify(funding_policy_service.describe_permission(user_id)), 200
    except Exception as exc:
        return _error(exc, "Failed to load funding permission")


@wallet_bp.get("/funding-check/<int:user_id>")
@require_auth
def funding_check_route(user_id: int):
    """
    Advisory pre-check for the funding form.

    Query: ?amount_cents=5000 (or ?amount=50.00)
    The server decides again when the intent is created.
    """
    try:
        if not g.principal.can_act_for(user_id):
            return jsonify({"error": "Access denied"}), 403
        amount_cents = parse_amount_cents(request.args.to_dict())
        decision = funding_policy_service.can_request_funding(user_id, amount_cents)
        return jsonify(decision.to_dict()), 200
    except Exception as exc:
        return _error(exc, "Failed to check funding limits")


@wallet_bp.get("/transactions/<int:user_id>")
@require_auth
def list_transactions_route(user_id: int):
    """Funding history with client status (pending | succeeded | failed)."""
    try:
        permission_service.require_self_or_admin(g.principal, user_id)
        limit = min(request.args.get("limit", 50, type=int), 200)
        transactions = payment_service.list_transactions(user_id, limit=limit)
        return jsonify({"transactions": [t.to_dict() for t in transactions]}), 200
    except Exception as exc:
        return _error(exc, "Failed to list wallet transactions")


@wallet_bp.get("/transaction/<int:transaction_id>")
@require_auth
def get_transaction_route(transaction_id: int):
    try:
        txn = payment_service.get_transaction(transaction_id)
        if not txn:
            return jsonify({"error": "Transaction not found"}), 404
        permission_service.require_self_or_admin(g.principal, txn.user_id)
        return jsonify(txn.to_dict()), 200
    except Exception as exc:
        return _error(exc, "Failed to load wallet transaction")


@wallet_bp.get("/balance/<int:user_id>")
@require_auth
def balance_route(user_id: int):
    try:
        permission_service.require_self_or_admin(g.principal, user_id)
        balance_cents = wallet_ledger_service.get_balance(user_id)
        return jsonify({"user_id": user_id, "balance_cents": balance_cents}), 200
    except wallet_ledger_service.LedgerError as exc:
        return jsonify({"error": str(exc)}), 404
    except Exception as exc:
        return _error(exc, "Failed to load wallet balance")


@wallet_bp.get("/ledger/<int:user_id>")
@require_auth
def ledger_route(user_id: int):
    try:
        permission_service.require_self_or_admin(g.principal, user_id)
        limit = min(request.args.get("limit", 100, type=int), 500)
        entries = wallet_ledger_service.list_entries(user_id, limit=limit)
        return jsonify({"entries": [e.to_dict() for e in entries]}), 200
    except Exception as exc:
        return _error(exc, "Failed to load wallet ledger")
