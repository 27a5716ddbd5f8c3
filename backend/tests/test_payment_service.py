"""
Wallet funding payment tests.

Verifies:
- Intent creation re-checks validation, permission and caps
- Confirmation credits the ledger exactly once (duplicates, interleaving)
- Gateway errors leave the row retryable; declines fail it
- Integrity alarms for mismatched payments
- Webhook dedupe and reconciliation sweep
"""

import logging
from datetime import timedelta

import pytest

from nexpos.extensions import db
from nexpos.models import (
    GatewayWebhookEvent,
    PaymentTransaction,
    SecurityEvent,
    WalletLedgerEntry,
)
from nexpos.services import funding_policy_service, payment_service, wallet_ledger_service
from nexpos.services.funding_policy_service import FundingPermissionDeniedError, FundingLimitExceededError
from nexpos.config import Config
from nexpos.services.payment_gateway import (
    EXTENSION_KEY,
    GatewayError,
    STATUS_CANCELED,
    STATUS_FAILED,
    STATUS_REQUIRES_PAYMENT,
    build_gateway,
    get_gateway,
)
from nexpos.services.payment_service import (
    ConfirmationMismatchError,
    IntegrityAlarmError,
    PaymentFailedError,
    RESULT_ALREADY_PROCESSED,
    RESULT_CREDITED,
)
from nexpos.services.permission_service import PermissionDeniedError
from nexpos.time_utils import utcnow
from nexpos.validation import ValidationError

from conftest import context_for


@pytest.fixture
def funded_retailer(retailer_user, admin_user):
    funding_policy_service.upsert_permission(
        retailer_user.id, {"can_add_funds": True}, actor_user_id=admin_user.id
    )
    return retailer_user


@pytest.fixture
def principal(funded_retailer):
    return context_for(funded_retailer).principal


def _open(user, principal, amount_cents=5000):
    return payment_service.create_intent(user.id, amount_cents, "credit_card", principal)


def _ledger_count(user):
    return db.session.query(WalletLedgerEntry).filter_by(user_id=user.id).count()


def _alarms():
    return db.session.query(SecurityEvent).filter_by(event_type=payment_service.ALARM_EVENT).count()


# =============================================================================
# INTENT CREATION
# =============================================================================


class TestCreateIntent:

    def test_opens_intent(self, gateway, funded_retailer, principal):
        client_secret, txn = _open(funded_retailer, principal)

        assert client_secret.startswith(txn.gateway_intent_id)
        assert txn.state == "intent_created"
        assert txn.amount_cents == 5000
        assert txn.initiated_by_user_id == funded_retailer.id
        assert gateway.intents[txn.gateway_intent_id].metadata["transaction_id"] == txn.id

    def test_below_minimum_rejected(self, gateway, funded_retailer, principal):
        with pytest.raises(ValidationError):
            _open(funded_retailer, principal, amount_cents=499)
        assert gateway.open_calls == 0

    def test_unknown_payment_method_rejected(self, gateway, funded_retailer, principal):
        with pytest.raises(ValidationError):
            payment_service.create_intent(funded_retailer.id, 5000, "bitcoin", principal)

    def test_not_permitted_leaves_no_row(self, gateway, retailer_user):
        principal = context_for(retailer_user).principal
        with pytest.raises(FundingPermissionDeniedError):
            _open(retailer_user, principal)

        assert db.session.query(PaymentTransaction).count() == 0
        assert gateway.open_calls == 0

    def test_cap_rechecked_at_intent_time(self, gateway, funded_retailer, principal, admin_user):
        funding_policy_service.upsert_permission(
            funded_retailer.id, {"max_daily_cents": 6000}, actor_user_id=admin_user.id
        )
        _, txn = _open(funded_retailer, principal, 5000)
        gateway.simulate_payment(txn.gateway_intent_id)
        payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        with pytest.raises(FundingLimitExceededError):
            _open(funded_retailer, principal, 2000)

    def test_open_intent_reserves_cap(self, gateway, funded_retailer, principal, admin_user):
        funding_policy_service.upsert_permission(
            funded_retailer.id, {"max_daily_cents": 10_000}, actor_user_id=admin_user.id
        )
        _, first = _open(funded_retailer, principal, 8_000)

        with pytest.raises(FundingLimitExceededError):
            _open(funded_retailer, principal, 8_000)
        assert db.session.query(PaymentTransaction).count() == 1

        # A declined intent releases its share of the cap
        gateway.simulate_payment(first.gateway_intent_id, STATUS_FAILED)
        with pytest.raises(PaymentFailedError):
            payment_service.confirm_payment(first.id, first.gateway_intent_id)

        _, second = _open(funded_retailer, principal, 8_000)
        assert second.state == "intent_created"

    def test_cannot_fund_another_users_wallet(self, gateway, funded_retailer, other_retailer):
        principal = context_for(other_retailer).principal
        with pytest.raises(PermissionDeniedError):
            _open(funded_retailer, principal)

    def test_employee_funds_on_behalf(self, gateway, funded_retailer, employee_user):
        principal = context_for(employee_user).principal
        _, txn = _open(funded_retailer, principal)

        assert txn.user_id == funded_retailer.id
        assert txn.initiated_by_user_id == employee_user.id

    def test_gateway_failure_marks_row_failed(self, gateway, funded_retailer, principal):
        gateway.open_error = "connection reset"

        with pytest.raises(GatewayError):
            _open(funded_retailer, principal)

        txn = db.session.query(PaymentTransaction).one()
        assert txn.state == "failed"
        assert "connection reset" in txn.failure_reason


# =============================================================================
# CONFIRMATION
# =============================================================================


class TestConfirmPayment:

    def test_credits_once(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        gateway.simulate_payment(txn.gateway_intent_id)

        result = payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        assert result.status == RESULT_CREDITED
        assert result.transaction.state == "ledger_credited"
        assert result.ledger_entry.resulting_balance_cents == 5000
        assert wallet_ledger_service.get_balance(funded_retailer.id) == 5000

    def test_duplicate_confirmation_is_noop(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        gateway.simulate_payment(txn.gateway_intent_id)
        payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        again = payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        assert again.status == RESULT_ALREADY_PROCESSED
        assert wallet_ledger_service.get_balance(funded_retailer.id) == 5000
        assert _ledger_count(funded_retailer) == 1
        assert gateway.capture_calls == 1

    def test_interleaved_confirmations_credit_once(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        gateway.simulate_payment(txn.gateway_intent_id)

        inner = {}

        def second_confirmation():
            inner["result"] = payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        gateway.on_capture = second_confirmation

        outer = payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        assert inner["result"].status == RESULT_CREDITED
        assert outer.status == RESULT_ALREADY_PROCESSED
        assert wallet_ledger_service.get_balance(funded_retailer.id) == 5000
        assert _ledger_count(funded_retailer) == 1

    def test_gateway_error_leaves_row_retryable(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        gateway.simulate_payment(txn.gateway_intent_id)
        gateway.capture_error = "timeout"

        with pytest.raises(GatewayError):
            payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        assert payment_service.get_transaction(txn.id).state == "intent_created"
        assert wallet_ledger_service.get_balance(funded_retailer.id) == 0

        gateway.capture_error = None
        assert payment_service.confirm_payment(txn.id, txn.gateway_intent_id).status == RESULT_CREDITED

    def test_unpaid_intent_is_not_credited(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)

        with pytest.raises(GatewayError):
            payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        assert payment_service.get_transaction(txn.id).state == "intent_created"

    def test_declined_payment_fails_row(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        gateway.simulate_payment(txn.gateway_intent_id, STATUS_FAILED)

        with pytest.raises(PaymentFailedError):
            payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        assert payment_service.get_transaction(txn.id).state == "failed"

        with pytest.raises(ConfirmationMismatchError):
            payment_service.confirm_payment(txn.id, txn.gateway_intent_id)
        assert wallet_ledger_service.get_balance(funded_retailer.id) == 0

    def test_amount_mismatch_raises_alarm(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        gateway.intents[txn.gateway_intent_id].amount_cents = 50_000
        gateway.simulate_payment(txn.gateway_intent_id)

        with pytest.raises(IntegrityAlarmError):
            payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        assert payment_service.get_transaction(txn.id).state == "confirmation_error"
        assert wallet_ledger_service.get_balance(funded_retailer.id) == 0
        assert _alarms() == 1

    def test_payment_for_other_intent_raises_alarm(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        _, other = _open(funded_retailer, principal)
        gateway.simulate_payment(other.gateway_intent_id)

        with pytest.raises(IntegrityAlarmError):
            payment_service.confirm_payment(txn.id, other.gateway_intent_id)

        assert payment_service.get_transaction(txn.id).state == "confirmation_error"
        assert payment_service.get_transaction(other.id).state == "intent_created"

    def test_unknown_transaction(self, gateway, db_session, caplog):
        with caplog.at_level(logging.WARNING), pytest.raises(ConfirmationMismatchError):
            payment_service.confirm_payment(9999, "pi_sim_missing")

        assert "unknown transaction 9999" in caplog.text

    def test_wrong_state_is_logged(self, gateway, funded_retailer, principal, caplog):
        _, txn = _open(funded_retailer, principal)
        gateway.simulate_payment(txn.gateway_intent_id, STATUS_FAILED)
        with pytest.raises(PaymentFailedError):
            payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        with caplog.at_level(logging.WARNING), pytest.raises(ConfirmationMismatchError):
            payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        assert f"transaction {txn.id} rejected in state failed" in caplog.text
        assert gateway.capture_calls == 1

    def test_missing_payment_id(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        with pytest.raises(ValidationError):
            payment_service.confirm_payment(txn.id, "")

    def test_other_retailer_cannot_confirm(self, gateway, funded_retailer, principal, other_retailer):
        _, txn = _open(funded_retailer, principal)
        gateway.simulate_payment(txn.gateway_intent_id)

        with pytest.raises(PermissionDeniedError):
            payment_service.confirm_payment(
                txn.id, txn.gateway_intent_id, actor=context_for(other_retailer).principal
            )


# =============================================================================
# WEBHOOK
# =============================================================================


def _event(event_id, event_type, txn, amount_cents=None, **extra):
    obj = {"id": txn.gateway_intent_id, "amount": amount_cents or txn.amount_cents, "currency": "usd"}
    obj.update(extra)
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


class TestGatewayEvents:

    def test_succeeded_event_credits(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)

        outcome = payment_service.handle_gateway_event(_event("evt_1", "payment_intent.succeeded", txn))

        assert outcome == "credited"
        assert wallet_ledger_service.get_balance(funded_retailer.id) == 5000

    def test_redelivered_event_is_duplicate(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        event = _event("evt_1", "payment_intent.succeeded", txn)
        payment_service.handle_gateway_event(event)

        assert payment_service.handle_gateway_event(event) == "duplicate"
        assert db.session.query(GatewayWebhookEvent).count() == 1
        assert _ledger_count(funded_retailer) == 1

    def test_event_after_client_confirmation(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        gateway.simulate_payment(txn.gateway_intent_id)
        payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        outcome = payment_service.handle_gateway_event(_event("evt_2", "payment_intent.succeeded", txn))

        assert outcome == "already_processed"
        assert _ledger_count(funded_retailer) == 1

    def test_success_for_failed_row_raises_alarm(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        payment_service.handle_gateway_event(_event("evt_1", "payment_intent.payment_failed", txn))

        outcome = payment_service.handle_gateway_event(_event("evt_2", "payment_intent.succeeded", txn))

        assert outcome == "alarm"
        assert payment_service.get_transaction(txn.id).state == "failed"
        assert wallet_ledger_service.get_balance(funded_retailer.id) == 0
        assert _alarms() == 1

    def test_mismatched_amount_event_raises_alarm(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)

        outcome = payment_service.handle_gateway_event(
            _event("evt_1", "payment_intent.succeeded", txn, amount_cents=1)
        )

        assert outcome == "alarm"
        assert payment_service.get_transaction(txn.id).state == "confirmation_error"

    def test_failed_event_fails_row(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)

        outcome = payment_service.handle_gateway_event(
            _event("evt_1", "payment_intent.payment_failed", txn,
                   last_payment_error={"message": "Your card was declined."})
        )

        assert outcome == "failed"
        txn = payment_service.get_transaction(txn.id)
        assert txn.state == "failed"
        assert txn.failure_reason == "Your card was declined."

    def test_unknown_intent_is_ignored(self, gateway, db_session):
        event = {"id": "evt_9", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_other"}}}
        assert payment_service.handle_gateway_event(event) == "ignored"

    def test_malformed_event_rejected(self, db_session):
        with pytest.raises(ValidationError):
            payment_service.handle_gateway_event({"type": "payment_intent.succeeded"})


# =============================================================================
# RECONCILIATION
# =============================================================================


def _age(txn, delta):
    txn.created_at = utcnow() - delta
    db.session.commit()


class TestReconcile:

    def test_settles_unconfirmed_rows(self, gateway, funded_retailer, principal):
        _, paid = _open(funded_retailer, principal, 5000)
        _, declined = _open(funded_retailer, principal, 1000)
        _, stale = _open(funded_retailer, principal, 2000)
        _, waiting = _open(funded_retailer, principal, 3000)

        gateway.simulate_payment(paid.gateway_intent_id)
        gateway.simulate_payment(declined.gateway_intent_id, STATUS_CANCELED)
        for txn in (paid, declined, waiting):
            _age(txn, timedelta(hours=1))
        _age(stale, timedelta(hours=30))

        summary = payment_service.reconcile_pending_transactions(
            older_than=timedelta(minutes=30), abandon_after=timedelta(hours=24)
        )

        assert summary["checked"] == 4
        assert summary["credited"] == 1
        assert summary["failed"] == 1
        assert summary["abandoned"] == 1
        assert summary["pending"] == 1
        assert wallet_ledger_service.get_balance(funded_retailer.id) == 5000
        assert payment_service.get_transaction(stale.id).state == "failed"
        assert payment_service.get_transaction(waiting.id).state == "intent_created"

    def test_recent_rows_are_left_alone(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        gateway.simulate_payment(txn.gateway_intent_id)

        summary = payment_service.reconcile_pending_transactions(older_than=timedelta(minutes=30))

        assert summary["checked"] == 0
        assert payment_service.get_transaction(txn.id).state == "intent_created"

    def test_lookup_errors_are_counted(self, gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        _age(txn, timedelta(hours=1))
        gateway.intents.clear()

        summary = payment_service.reconcile_pending_transactions(older_than=timedelta(minutes=30))

        assert summary["errors"] == 1
        assert payment_service.get_transaction(txn.id).state == "intent_created"


# =============================================================================
# CONFIGURED GATEWAY
# =============================================================================


@pytest.fixture
def configured_gateway(app):
    """Let the app build its gateway from config instead of the test fake."""
    app.extensions.pop(EXTENSION_KEY, None)
    yield
    app.extensions.pop(EXTENSION_KEY, None)


def _default_config(**overrides):
    config = {key: getattr(Config, key) for key in dir(Config) if key.isupper()}
    config.update(overrides)
    return config


class TestConfiguredGateway:

    def test_default_simulated_intents_start_unpaid(self):
        gateway = build_gateway(_default_config())

        intent = gateway.open_intent(5000, "usd")

        assert intent.status == STATUS_REQUIRES_PAYMENT

    def test_auto_succeed_needs_debug_or_testing(self):
        assert build_gateway(_default_config(SIMULATED_GATEWAY_AUTO_SUCCEED=True)).auto_succeed is False
        assert build_gateway(
            _default_config(SIMULATED_GATEWAY_AUTO_SUCCEED=True, TESTING=True)
        ).auto_succeed is True

    def test_unpaid_intent_is_never_credited(self, configured_gateway, funded_retailer, principal):
        _, txn = _open(funded_retailer, principal)
        assert get_gateway().auto_succeed is False

        with pytest.raises(GatewayError):
            payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        assert payment_service.get_transaction(txn.id).state == "intent_created"
        assert wallet_ledger_service.get_balance(funded_retailer.id) == 0


# =============================================================================
# LEDGER
# =============================================================================


class TestLedger:

    def test_ledger_matches_balance(self, gateway, funded_retailer, principal):
        for amount in (5000, 2500):
            _, txn = _open(funded_retailer, principal, amount)
            gateway.simulate_payment(txn.gateway_intent_id)
            payment_service.confirm_payment(txn.id, txn.gateway_intent_id)

        report = wallet_ledger_service.verify_ledger_consistency(funded_retailer.id)

        assert report["consistent"] is True
        assert report["ledger_total_cents"] == 7500
        assert [e.resulting_balance_cents for e in wallet_ledger_service.list_entries(funded_retailer.id)] == [7500, 5000]

    def test_tampered_balance_is_detected(self, funded_retailer):
        funded_retailer.balance_cents = 100
        db.session.commit()

        assert wallet_ledger_service.verify_ledger_consistency(funded_retailer.id)["consistent"] is False

    def test_credit_rejects_non_positive(self, funded_retailer):
        with pytest.raises(wallet_ledger_service.LedgerError):
            wallet_ledger_service.credit(funded_retailer.id, 0, 1)

    def test_client_status(self):
        assert payment_service.client_status("ledger_credited") == "succeeded"
        assert payment_service.client_status("confirmation_error") == "failed"
        assert payment_service.client_status("intent_created") == "pending"
