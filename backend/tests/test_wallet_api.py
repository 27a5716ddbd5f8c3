"""
Wallet funding API tests (HTTP level).

Verifies:
- Employee funding flow: prompt, verify, resumed intent, confirm, balance
- Retailer self-funding without a prompt
- Policy denials map to 403 / 422
- Webhook signature checking
- Integrity alarms surface as a generic 500
"""

import json
import time

import pytest

from nexpos.models import PaymentTransaction, User
from nexpos.services import funding_policy_service
from nexpos.services.payment_gateway import compute_signature
from nexpos.routes.errors import INTEGRITY_ALARM_MESSAGE

from conftest import WEBHOOK_SECRET, login_headers, fresh


@pytest.fixture
def funded_retailer(retailer_user, admin_user):
    funding_policy_service.upsert_permission(
        retailer_user.id, {"can_add_funds": True}, actor_user_id=admin_user.id
    )
    return retailer_user


def _fund(client, headers, user_id, amount=50.00, payment_method="credit_card"):
    return client.post(
        f"/api/wallet/create-payment-intent?userId={user_id}",
        json={"amount": amount, "payment_method": payment_method},
        headers=headers,
    )


def _signed_post(client, event, secret=WEBHOOK_SECRET):
    body = json.dumps(event).encode()
    timestamp = int(time.time())
    signature = compute_signature(body, timestamp, secret)
    return client.post(
        "/api/wallet/webhook",
        data=body,
        headers={"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"},
    )


class TestEmployeeFundingFlow:

    def test_verify_then_credit(self, client, gateway, employee_user, funded_retailer):
        headers = login_headers(client, "emp7")

        prompt = _fund(client, headers, funded_retailer.id)
        assert prompt.status_code == 202
        assert prompt.json["verification_required"] is True
        assert "$50.00" in prompt.json["operation_details"]
        assert gateway.open_calls == 0

        verified = client.post("/api/auth/verify-employee-id", json={"employee_id": "EMP-7"}, headers=headers)
        assert verified.status_code == 200
        resumed = verified.json["resumed"]["result"]
        assert resumed["client_secret"]
        transaction_id = resumed["transaction_id"]
        intent_id = resumed["transaction"]["gateway_intent_id"]

        gateway.simulate_payment(intent_id)

        confirmed = client.post(
            "/api/wallet/confirm-payment",
            json={"transaction_id": transaction_id, "payment_intent_id": intent_id},
            headers=headers,
        )
        assert confirmed.status_code == 200
        assert confirmed.json["status"] == "credited"

        retailer_headers = login_headers(client, "retailer1")
        balance = client.get(f"/api/wallet/balance/{funded_retailer.id}", headers=retailer_headers)
        assert balance.json["balance_cents"] == 5000

        history = client.get(f"/api/wallet/transactions/{funded_retailer.id}", headers=retailer_headers)
        assert history.json["transactions"][0]["status"] == "succeeded"

        again = client.post(
            "/api/wallet/confirm-payment",
            json={"transaction_id": transaction_id, "payment_intent_id": intent_id},
            headers=headers,
        )
        assert again.json["status"] == "already_processed"
        assert fresh(User, funded_retailer.id).balance_cents == 5000

    def test_wrong_id_then_cancel(self, client, gateway, employee_user, funded_retailer):
        headers = login_headers(client, "emp7")
        _fund(client, headers, funded_retailer.id)

        wrong = client.post("/api/auth/verify-employee-id", json={"employee_id": "EMP-8"}, headers=headers)
        assert wrong.status_code == 400
        assert wrong.json["verified"] is False

        state = client.get("/api/auth/verification", headers=headers)
        assert state.json["pending_action"]["operation_type"] == "fund_transfer"

        cancelled = client.post("/api/auth/verification/cancel", headers=headers)
        assert cancelled.json["cancelled"] is True

        verified = client.post("/api/auth/verify-employee-id", json={"employee_id": "EMP-7"}, headers=headers)
        assert verified.json["resumed"] is None
        assert gateway.open_calls == 0

    def test_lockout_returns_423(self, client, employee_user):
        headers = login_headers(client, "emp7")
        for _ in range(5):
            client.post("/api/auth/verify-employee-id", json={"employee_id": "nope"}, headers=headers)

        locked = client.post("/api/auth/verify-employee-id", json={"employee_id": "EMP-7"}, headers=headers)

        assert locked.status_code == 423
        assert locked.json["retry_after_seconds"] > 0

    def test_retailer_cannot_verify(self, client, retailer_user):
        headers = login_headers(client, "retailer1")
        response = client.post("/api/auth/verify-employee-id", json={"employee_id": "EMP-7"}, headers=headers)
        assert response.status_code == 403


class TestRetailerFunding:

    def test_self_funding_runs_immediately(self, client, gateway, funded_retailer):
        headers = login_headers(client, "retailer1")

        response = _fund(client, headers, funded_retailer.id)

        assert response.status_code == 200
        assert response.json["client_secret"]
        assert response.json["transaction"]["status"] == "pending"

    def test_cannot_fund_another_wallet(self, client, gateway, funded_retailer, other_retailer):
        headers = login_headers(client, "retailer2")

        response = _fund(client, headers, funded_retailer.id)

        assert response.status_code == 403
        assert gateway.open_calls == 0

    def test_not_permitted(self, client, gateway, retailer_user):
        headers = login_headers(client, "retailer1")

        response = _fund(client, headers, retailer_user.id)

        assert response.status_code == 403
        assert response.json["reason"] == "not_permitted"

    def test_daily_cap_exceeded(self, client, gateway, retailer_user, admin_user):
        funding_policy_service.upsert_permission(
            retailer_user.id, {"can_add_funds": True, "max_daily_cents": 2000}, actor_user_id=admin_user.id
        )
        headers = login_headers(client, "retailer1")

        response = _fund(client, headers, retailer_user.id, amount=30)

        assert response.status_code == 422
        assert response.json["reason"] == "daily_limit_exceeded"
        assert response.json["limits"]["daily_remaining_cents"] == 2000

    def test_invalid_amount(self, client, gateway, funded_retailer):
        headers = login_headers(client, "retailer1")

        assert _fund(client, headers, funded_retailer.id, amount="12.345").status_code == 400
        assert _fund(client, headers, funded_retailer.id, amount=1).status_code == 400
        assert _fund(client, headers, funded_retailer.id, payment_method="cash").status_code == 400

    def test_funding_check(self, client, funded_retailer):
        headers = login_headers(client, "retailer1")

        response = client.get(f"/api/wallet/funding-check/{funded_retailer.id}?amount_cents=5000", headers=headers)

        assert response.status_code == 200
        assert response.json["allowed"] is True

    def test_gateway_down_returns_502(self, client, gateway, funded_retailer):
        gateway.open_error = "service unavailable"
        headers = login_headers(client, "retailer1")

        response = _fund(client, headers, funded_retailer.id)

        assert response.status_code == 502


class TestConfirmErrors:

    def test_amount_mismatch_is_generic_500(self, client, gateway, funded_retailer):
        headers = login_headers(client, "retailer1")
        created = _fund(client, headers, funded_retailer.id).json
        intent_id = created["transaction"]["gateway_intent_id"]
        gateway.intents[intent_id].amount_cents = 1
        gateway.simulate_payment(intent_id)

        response = client.post(
            "/api/wallet/confirm-payment",
            json={"transaction_id": created["transaction_id"], "payment_intent_id": intent_id},
            headers=headers,
        )

        assert response.status_code == 500
        assert response.json["error"] == INTEGRITY_ALARM_MESSAGE
        assert fresh(PaymentTransaction, created["transaction_id"]).state == "confirmation_error"

    def test_declined_returns_402(self, client, gateway, funded_retailer):
        headers = login_headers(client, "retailer1")
        created = _fund(client, headers, funded_retailer.id).json
        intent_id = created["transaction"]["gateway_intent_id"]
        gateway.simulate_payment(intent_id, "failed")

        response = client.post(
            "/api/wallet/confirm-payment",
            json={"transaction_id": created["transaction_id"], "payment_intent_id": intent_id},
            headers=headers,
        )

        assert response.status_code == 402

    def test_missing_fields(self, client, retailer_user):
        headers = login_headers(client, "retailer1")
        response = client.post("/api/wallet/confirm-payment", json={}, headers=headers)
        assert response.status_code == 400


class TestWebhook:

    def _succeeded(self, txn_json):
        return {
            "id": "evt_test_1",
            "type": "payment_intent.succeeded",
            "data": {"object": {
                "id": txn_json["gateway_intent_id"],
                "amount": txn_json["amount_cents"],
                "currency": "usd",
            }},
        }

    def test_signed_event_credits(self, client, gateway, funded_retailer):
        headers = login_headers(client, "retailer1")
        created = _fund(client, headers, funded_retailer.id).json

        response = _signed_post(client, self._succeeded(created["transaction"]))

        assert response.status_code == 200
        assert response.json["outcome"] == "credited"
        assert fresh(User, funded_retailer.id).balance_cents == 5000

        redelivered = _signed_post(client, self._succeeded(created["transaction"]))
        assert redelivered.json["outcome"] == "duplicate"

    def test_bad_signature_rejected(self, client, gateway, funded_retailer):
        headers = login_headers(client, "retailer1")
        created = _fund(client, headers, funded_retailer.id).json

        response = _signed_post(client, self._succeeded(created["transaction"]), secret="whsec_wrong")

        assert response.status_code == 400
        assert fresh(User, funded_retailer.id).balance_cents == 0

    def test_missing_signature_rejected(self, client, db_session):
        response = client.post("/api/wallet/webhook", json={"id": "evt_1", "type": "x"})
        assert response.status_code == 400

    def test_stale_timestamp_rejected(self, client, db_session):
        body = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded"}).encode()
        timestamp = int(time.time()) - 3600
        signature = compute_signature(body, timestamp, WEBHOOK_SECRET)

        response = client.post(
            "/api/wallet/webhook",
            data=body,
            headers={"Stripe-Signature": f"t={timestamp},v1={signature}"},
        )

        assert response.status_code == 400
