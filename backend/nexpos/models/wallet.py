from __future__ import annotations

from ..extensions import db
from nexpos.time_utils import to_utc_z


class FundingPermission(db.Model):
    """
    Per-user wallet funding policy.

    WHY: Administrators decide who may add funds and how much per day/month.
    Read-only to the funding flow; edited only through admin routes/CLI.

    RULES:
    - Caps, when set, are non-negative (validation.enforce_rules_funding_permission)
    - can_add_funds=False makes the caps irrelevant
    - NULL cap means "no cap" for that window
    """
    __tablename__ = "funding_permissions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    can_add_funds = db.Column(db.Boolean, nullable=False, default=False)
    max_daily_cents = db.Column(db.Integer, nullable=True)
    max_monthly_cents = db.Column(db.Integer, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", foreign_keys=[user_id], backref=db.backref("funding_permission", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "can_add_funds": self.can_add_funds,
            "max_daily_cents": self.max_daily_cents,
            "max_monthly_cents": self.max_monthly_cents,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "updated_by_user_id": self.updated_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class PaymentTransaction(db.Model):
    """
    One wallet funding attempt driven through the payment gateway.

    STATE MACHINE (terminal states marked *):
        created -> intent_created -> gateway_confirmed -> ledger_credited*
        any non-terminal state -> failed*
        gateway_confirmed -> confirmation_error*  (integrity alarm)

    INVARIANT: ledger_credited is reached at most once per id. Enforced by
    a compare-and-set on state, the optimistic version_id, and the unique
    transaction_id on wallet_ledger_entries.

    Rows are never deleted; a retry is a new row.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.Index("ix_payment_txns_user_created", "user_id", "created_at"),
        db.Index("ix_payment_txns_state_created", "state", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    initiated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="usd")
    payment_method = db.Column(db.String(20), nullable=False)  # credit_card, debit_card

    state = db.Column(db.String(24), nullable=False, default="created", index=True)

    gateway_intent_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    gateway_payment_id = db.Column(db.String(255), nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", foreign_keys=[user_id], backref=db.backref("payment_transactions", lazy=True))

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        from nexpos.services.payment_service import client_status

        return {
            "id": self.id,
            "user_id": self.user_id,
            "initiated_by_user_id": self.initiated_by_user_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "payment_method": self.payment_method,
            "state": self.state,
            "status": client_status(self.state),
            "gateway_intent_id": self.gateway_intent_id,
            "failure_reason": self.failure_reason,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
        }


class WalletLedgerEntry(db.Model):
    """
    Append-only record of wallet credits.

    WHY: The durable proof that a funding transaction moved money.
    One entry per ledger_credited PaymentTransaction (unique transaction_id).

    IMMUTABLE: Never update or delete.
    """
    __tablename__ = "wallet_ledger_entries"
    __table_args__ = (
        db.UniqueConstraint("transaction_id", name="uq_wallet_ledger_transaction"),
        db.Index("ix_wallet_ledger_user_occurred", "user_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("payment_transactions.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    resulting_balance_cents = db.Column(db.Integer, nullable=False)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    transaction = db.relationship("PaymentTransaction", backref=db.backref("ledger_entry", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "user_id": self.user_id,
            "amount_cents": self.amount_cents,
            "resulting_balance_cents": self.resulting_balance_cents,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class GatewayWebhookEvent(db.Model):
    """
    Gateway callbacks already processed (dedupe by the gateway's event id).

    WHY: Gateways deliver webhooks at-least-once; processing the same event
    twice must be a no-op.
    """
    __tablename__ = "gateway_webhook_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    gateway_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    event_type = db.Column(db.String(64), nullable=False)
    gateway_intent_id = db.Column(db.String(255), nullable=True, index=True)
    outcome = db.Column(db.String(32), nullable=True)  # credited, already_processed, failed, ignored, alarm
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "gateway_event_id": self.gateway_event_id,
            "event_type": self.event_type,
            "gateway_intent_id": self.gateway_intent_id,
            "outcome": self.outcome,
            "received_at": to_utc_z(self.received_at),
        }
