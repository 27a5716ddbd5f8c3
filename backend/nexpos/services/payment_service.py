# Overview: Service-layer operations for wallet funding payments; intents, confirmation, webhooks, reconciliation.

"""
Wallet Funding Payment Service

WHY: Turn a card payment at the gateway into a wallet credit, exactly once.

FLOW:
1. create_intent: re-check the funding policy, insert a "created" row,
   open a gateway intent (no lock held), move to "intent_created"
2. confirm_payment (client) / handle_gateway_event (webhook) /
   reconcile_pending_transactions (sweep): learn the gateway outcome, then
   run the locked credit section
3. Locked credit section: compare-and-set intent_created -> gateway_confirmed,
   credit the ledger, set ledger_credited, all in one DB transaction

AT-MOST-ONCE CREDIT (three independent guards):
- compare-and-set on state: only one caller wins the transition
- version_id optimistic lock on payment_transactions
- unique transaction_id on wallet_ledger_entries

INTEGRITY ALARMS: a gateway success that contradicts our record (wrong
intent or amount, or success for a row already failed) is never credited.
It is written to security_events and the error log for an operator.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..identity import Principal
from ..models import (
    FundingPermission,
    GatewayWebhookEvent,
    PaymentTransaction,
    User,
    WalletLedgerEntry,
)
from ..validation import ValidationError
from . import funding_policy_service, permission_service, wallet_ledger_service
from .concurrency import lock_for_update, compare_and_set, run_with_retry
from .payment_gateway import GatewayError, GatewayPayment, get_gateway, STATUS_SUCCEEDED, FAILED_STATUSES
from .permission_service import PermissionDeniedError
from nexpos.time_utils import utcnow


class PaymentError(Exception):
    """Raised for wallet payment errors."""
    pass


class PaymentFailedError(PaymentError):
    """The gateway reported a definite decline or cancellation."""
    pass


class ConfirmationMismatchError(PaymentError):
    """Confirmation does not apply to this transaction in its current state."""
    pass


class IntegrityAlarmError(PaymentError):
    """Gateway and local records disagree; an operator must look at it."""
    pass


# =============================================================================
# TRANSACTION STATES (CONSTANTS)
# =============================================================================

STATE_CREATED = "created"
STATE_INTENT_CREATED = "intent_created"
STATE_GATEWAY_CONFIRMED = "gateway_confirmed"
STATE_LEDGER_CREDITED = "ledger_credited"
STATE_FAILED = "failed"
STATE_CONFIRMATION_ERROR = "confirmation_error"

NON_TERMINAL_STATES = (STATE_CREATED, STATE_INTENT_CREATED, STATE_GATEWAY_CONFIRMED)
DEAD_STATES = (STATE_FAILED, STATE_CONFIRMATION_ERROR)

VALID_PAYMENT_METHODS = ("credit_card", "debit_card")

RESULT_CREDITED = "credited"
RESULT_ALREADY_PROCESSED = "already_processed"

ALARM_EVENT = "PAYMENT_INTEGRITY_ALARM"


def client_status(state: str) -> str:
    """Collapse internal states to what the wallet UI shows."""
    if state == STATE_LEDGER_CREDITED:
        return "succeeded"
    if state in DEAD_STATES:
        return "failed"
    return "pending"


@dataclass
class ConfirmationResult:
    status: str
    transaction: PaymentTransaction
    ledger_entry: WalletLedgerEntry | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "transaction": self.transaction.to_dict(),
            "ledger_entry": self.ledger_entry.to_dict() if self.ledger_entry else None,
        }


# =============================================================================
# INTENT CREATION
# =============================================================================

def validate_funding_request(amount_cents, payment_method: str) -> None:
    """Amount bounds and payment method, checked before anything is parked or opened."""
    if payment_method not in VALID_PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method: {payment_method}. Must be one of {list(VALID_PAYMENT_METHODS)}"
        )

    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool):
        raise ValidationError("amount_cents must be an integer")

    minimum = current_app.config.get("FUNDING_MIN_CENTS", 500)
    maximum = current_app.config.get("FUNDING_MAX_CENTS", 500_000)
    if amount_cents < minimum:
        raise ValidationError(f"Minimum funding amount is {minimum} cents")
    if amount_cents > maximum:
        raise ValidationError(f"Maximum funding amount is {maximum} cents")


def create_intent(
    user_id: int,
    amount_cents: int,
    payment_method: str,
    initiated_by: Principal,
) -> tuple[str, PaymentTransaction]:
    """
    Open a gateway payment intent for a wallet funding request.

    Args:
        user_id: Wallet being funded
        amount_cents: Amount in cents
        payment_method: credit_card or debit_card
        initiated_by: Principal making the request (self, employee, or admin)

    Returns:
        (client_secret, PaymentTransaction in state intent_created)

    Raises:
        ValidationError: bad amount or payment method
        PermissionDeniedError: initiator may not fund this wallet
        PaymentError: user missing or inactive
        FundingPolicyError: not permitted, or a cap would be exceeded
        GatewayError: gateway failed; the row is left in state failed
    """
    validate_funding_request(amount_cents, payment_method)

    if not initiated_by.can_act_for(user_id):
        raise PermissionDeniedError("Cannot add funds to another user's wallet")

    currency = current_app.config.get("FUNDING_CURRENCY", "usd")

    def _op():
        user = db.session.query(User).filter_by(id=user_id).first()
        if not user or not user.is_active:
            raise PaymentError(f"User {user_id} not found or inactive")

        # Hold the permission row while deciding so caps are checked against
        # a record that cannot change underneath us
        permission = lock_for_update(
            db.session.query(FundingPermission).filter_by(user_id=user_id)
        ).first()
        decision = funding_policy_service.decide(permission, user_id, amount_cents, utcnow())
        try:
            funding_policy_service.raise_for_decision(decision)
        except funding_policy_service.FundingPolicyError:
            db.session.rollback()
            raise

        now = utcnow()
        txn = PaymentTransaction(
            user_id=user_id,
            initiated_by_user_id=initiated_by.id,
            amount_cents=amount_cents,
            currency=currency,
            payment_method=payment_method,
            state=STATE_CREATED,
            created_at=now,
            updated_at=now,
        )
        db.session.add(txn)
        db.session.commit()
        return txn

    txn = run_with_retry(_op)

    try:
        intent = get_gateway().open_intent(
            amount_cents,
            currency,
            metadata={"transaction_id": txn.id, "user_id": user_id},
        )
    except GatewayError as exc:
        txn.state = STATE_FAILED
        txn.failure_reason = f"Gateway error: {exc}"
        txn.updated_at = utcnow()
        db.session.commit()
        current_app.logger.warning("Payment intent for transaction %s failed: %s", txn.id, exc)
        raise

    txn.state = STATE_INTENT_CREATED
    txn.gateway_intent_id = intent.id
    txn.updated_at = utcnow()
    db.session.commit()

    return intent.client_secret, txn


# =============================================================================
# CONFIRMATION
# =============================================================================

def _raise_integrity_alarm(txn: PaymentTransaction, reason: str, mark_error: bool) -> None:
    """Record the alarm, optionally park the row in confirmation_error, raise."""
    txn_id = txn.id
    if mark_error:
        compare_and_set(
            PaymentTransaction,
            txn_id,
            "state",
            txn.state,
            {"state": STATE_CONFIRMATION_ERROR, "failure_reason": reason, "updated_at": utcnow()},
        )
    permission_service.log_security_event(
        user_id=txn.user_id,
        event_type=ALARM_EVENT,
        success=False,
        resource=f"payment_transaction:{txn_id}",
        action="confirm",
        reason=reason,
        commit=False,
    )
    db.session.commit()
    db.session.expire(txn)
    current_app.logger.error("Payment integrity alarm for transaction %s: %s", txn_id, reason)
    raise IntegrityAlarmError(reason)


def _mark_failed(transaction_id: int, reason: str) -> bool:
    """Move a non-terminal row to failed. Returns True if this call did it."""
    updated = db.session.query(PaymentTransaction).filter(
        PaymentTransaction.id == transaction_id,
        PaymentTransaction.state.in_((STATE_CREATED, STATE_INTENT_CREATED)),
    ).update(
        {"state": STATE_FAILED, "failure_reason": reason, "updated_at": utcnow()},
        synchronize_session=False,
    )
    db.session.commit()
    return updated == 1


def _credit_locked(transaction_id: int, gateway_payment_id: str) -> ConfirmationResult:
    """
    The single critical section that may credit a wallet.

    Exactly one caller wins the intent_created -> gateway_confirmed
    compare-and-set; everyone else reports already_processed.
    """
    def _op():
        txn = lock_for_update(
            db.session.query(PaymentTransaction).filter_by(id=transaction_id)
        ).first()

        if txn.state == STATE_LEDGER_CREDITED:
            db.session.rollback()
            return ConfirmationResult(status=RESULT_ALREADY_PROCESSED, transaction=txn)
        if txn.state in DEAD_STATES:
            _raise_integrity_alarm(
                txn, f"Gateway reports success for a transaction in state {txn.state}", mark_error=False
            )

        won = compare_and_set(
            PaymentTransaction,
            txn.id,
            "state",
            STATE_INTENT_CREATED,
            {"state": STATE_GATEWAY_CONFIRMED, "gateway_payment_id": gateway_payment_id},
        )
        if not won:
            db.session.rollback()
            db.session.refresh(txn)
            if txn.state in DEAD_STATES:
                _raise_integrity_alarm(
                    txn, f"Gateway reports success for a transaction in state {txn.state}", mark_error=False
                )
            return ConfirmationResult(status=RESULT_ALREADY_PROCESSED, transaction=txn)

        db.session.expire(txn)

        entry = wallet_ledger_service.credit(txn.user_id, txn.amount_cents, txn.id)

        now = utcnow()
        txn.state = STATE_LEDGER_CREDITED
        txn.completed_at = now
        txn.updated_at = now
        db.session.commit()
        return ConfirmationResult(status=RESULT_CREDITED, transaction=txn, ledger_entry=entry)

    try:
        return run_with_retry(_op)
    except IntegrityError:
        # Ledger already holds an entry for this transaction
        db.session.rollback()
        txn = db.session.query(PaymentTransaction).filter_by(id=transaction_id).first()
        return ConfirmationResult(status=RESULT_ALREADY_PROCESSED, transaction=txn)


def _apply_payment(txn: PaymentTransaction, payment: GatewayPayment) -> ConfirmationResult:
    """Act on a gateway payment report for txn (no lock held on entry)."""
    if payment.status in FAILED_STATUSES:
        _mark_failed(txn.id, f"Payment {payment.status} at gateway")
        db.session.refresh(txn)
        raise PaymentFailedError(f"Payment was not completed ({payment.status})")

    if payment.status != STATUS_SUCCEEDED:
        raise GatewayError(f"Payment not completed yet (status: {payment.status})")

    if payment.intent_id != txn.gateway_intent_id:
        current_app.logger.warning(
            "Confirmation for transaction %s references intent %s, expected %s",
            txn.id, payment.intent_id, txn.gateway_intent_id,
        )
        _raise_integrity_alarm(txn, "Payment belongs to a different intent", mark_error=True)

    if payment.amount_cents != txn.amount_cents or payment.currency.lower() != txn.currency.lower():
        current_app.logger.warning(
            "Confirmation for transaction %s paid %s %s, expected %s %s",
            txn.id, payment.amount_cents, payment.currency, txn.amount_cents, txn.currency,
        )
        _raise_integrity_alarm(txn, "Paid amount does not match the transaction", mark_error=True)

    return _credit_locked(txn.id, payment.id)


def confirm_payment(
    transaction_id: int,
    gateway_payment_id: str,
    actor: Principal | None = None,
) -> ConfirmationResult:
    """
    Confirm a payment reported by the client and credit the wallet once.

    Returns:
        ConfirmationResult with status "credited" or "already_processed"

    Raises:
        ConfirmationMismatchError: unknown id, or row not awaiting confirmation
        PermissionDeniedError: actor may not touch this wallet
        GatewayError: outcome unknown; the row is unchanged and may be retried
        PaymentFailedError: gateway declined; the row is now failed
        IntegrityAlarmError: gateway and local record disagree; nothing credited
    """
    if not gateway_payment_id:
        raise ValidationError("payment_intent_id required")

    txn = db.session.query(PaymentTransaction).filter_by(id=transaction_id).first()
    if not txn:
        current_app.logger.warning("Confirmation for unknown transaction %s", transaction_id)
        raise ConfirmationMismatchError(f"Transaction {transaction_id} not found")

    if actor is not None and not actor.can_act_for(txn.user_id):
        raise PermissionDeniedError("Cannot confirm another user's payment")

    if txn.state == STATE_LEDGER_CREDITED:
        return ConfirmationResult(status=RESULT_ALREADY_PROCESSED, transaction=txn)

    if txn.state != STATE_INTENT_CREATED:
        current_app.logger.warning(
            "Confirmation for transaction %s rejected in state %s", transaction_id, txn.state
        )
        raise ConfirmationMismatchError(
            f"Transaction {transaction_id} cannot be confirmed in state {txn.state}"
        )

    payment = get_gateway().capture_confirmation(txn.gateway_intent_id, gateway_payment_id)
    return _apply_payment(txn, payment)


# =============================================================================
# WEBHOOK
# =============================================================================

EVENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_FAILED = "payment_intent.payment_failed"
EVENT_CANCELED = "payment_intent.canceled"


def _record_event(event_id: str, event_type: str, intent_id: str | None, outcome: str) -> str:
    db.session.add(GatewayWebhookEvent(
        gateway_event_id=event_id,
        event_type=event_type,
        gateway_intent_id=intent_id,
        outcome=outcome,
        received_at=utcnow(),
    ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return "duplicate"
    return outcome


def handle_gateway_event(event: dict) -> str:
    """
    Apply a verified gateway webhook event.

    Returns the outcome: credited, already_processed, failed, ignored,
    alarm, or duplicate (event id seen before).

    The event body carries the payment itself, so no gateway call is made.
    Raises ValidationError for malformed events.
    """
    if not isinstance(event, dict):
        raise ValidationError("Invalid event payload")

    event_id = event.get("id")
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    intent_id = obj.get("id")

    if not event_id or not event_type:
        raise ValidationError("Event id and type required")

    if db.session.query(GatewayWebhookEvent).filter_by(gateway_event_id=event_id).first():
        return "duplicate"

    txn = None
    if intent_id:
        txn = db.session.query(PaymentTransaction).filter_by(gateway_intent_id=intent_id).first()

    if txn is None:
        return _record_event(event_id, event_type, intent_id, "ignored")

    if event_type == EVENT_SUCCEEDED:
        try:
            amount = int(obj.get("amount"))
        except (TypeError, ValueError):
            raise ValidationError("Event amount missing")
        payment = GatewayPayment(
            id=intent_id,
            intent_id=intent_id,
            amount_cents=amount,
            currency=obj.get("currency") or txn.currency,
            status=STATUS_SUCCEEDED,
        )
        try:
            result = _apply_payment(txn, payment)
        except IntegrityAlarmError:
            return _record_event(event_id, event_type, intent_id, "alarm")
        return _record_event(event_id, event_type, intent_id, result.status)

    if event_type in (EVENT_FAILED, EVENT_CANCELED):
        reason = (obj.get("last_payment_error") or {}).get("message") or event_type
        outcome = "failed" if _mark_failed(txn.id, reason) else "ignored"
        return _record_event(event_id, event_type, intent_id, outcome)

    return _record_event(event_id, event_type, intent_id, "ignored")


# =============================================================================
# RECONCILIATION
# =============================================================================

def reconcile_pending_transactions(
    older_than: timedelta | None = None,
    abandon_after: timedelta | None = None,
) -> dict:
    """
    Settle transactions whose client never came back to confirm.

    Rows in created/intent_created older than older_than are checked at the
    gateway: paid ones are credited, declined ones failed, and rows still
    unpaid after abandon_after are failed as abandoned.
    """
    if older_than is None:
        older_than = timedelta(minutes=current_app.config.get("RECONCILE_AFTER_MINUTES", 30))
    if abandon_after is None:
        abandon_after = timedelta(hours=current_app.config.get("ABANDON_AFTER_HOURS", 24))

    now = utcnow()
    summary = {"checked": 0, "credited": 0, "failed": 0, "abandoned": 0, "pending": 0, "alarms": 0, "errors": 0}

    rows = db.session.query(PaymentTransaction).filter(
        PaymentTransaction.state.in_((STATE_CREATED, STATE_INTENT_CREATED)),
        PaymentTransaction.created_at <= now - older_than,
    ).order_by(PaymentTransaction.id).all()

    gateway = get_gateway()

    for txn in rows:
        summary["checked"] += 1
        abandoned = txn.created_at <= now - abandon_after

        if txn.state == STATE_CREATED or not txn.gateway_intent_id:
            if abandoned:
                summary["abandoned"] += int(_mark_failed(txn.id, "Abandoned before a gateway intent was opened"))
            else:
                summary["pending"] += 1
            continue

        try:
            intent = gateway.retrieve_intent(txn.gateway_intent_id)
        except GatewayError as exc:
            current_app.logger.warning("Reconcile: transaction %s lookup failed: %s", txn.id, exc)
            summary["errors"] += 1
            continue

        if intent.status == STATUS_SUCCEEDED:
            payment = GatewayPayment(
                id=intent.id,
                intent_id=intent.id,
                amount_cents=intent.amount_cents,
                currency=intent.currency,
                status=intent.status,
            )
            try:
                result = _apply_payment(txn, payment)
            except IntegrityAlarmError:
                summary["alarms"] += 1
                continue
            if result.status == RESULT_CREDITED:
                summary["credited"] += 1
        elif intent.status in FAILED_STATUSES:
            summary["failed"] += int(_mark_failed(txn.id, f"Payment {intent.status} at gateway"))
        elif abandoned:
            summary["abandoned"] += int(_mark_failed(txn.id, "Abandoned: intent never paid"))
        else:
            summary["pending"] += 1

    return summary


# =============================================================================
# READS
# =============================================================================

def get_transaction(transaction_id: int) -> PaymentTransaction | None:
    return db.session.query(PaymentTransaction).filter_by(id=transaction_id).first()


def list_transactions(user_id: int, limit: int = 50) -> list[PaymentTransaction]:
    return db.session.query(PaymentTransaction).filter_by(
        user_id=user_id
    ).order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc()).limit(limit).all()
