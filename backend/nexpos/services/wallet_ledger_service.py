# Overview: Service-layer operations for the wallet ledger; balance and append-only credits.

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..models import User, WalletLedgerEntry
from .concurrency import lock_for_update
from nexpos.time_utils import utcnow
"""
Wallet Ledger Invariants (authoritative)

- Append-only: entries are never updated or deleted.
- One entry per credited payment transaction (unique transaction_id).
- balance_cents is updated under the same user row lock and the same DB
  transaction as the append, so at every commit:
      sum(entries.amount_cents) == users.balance_cents - users.opening_balance_cents
- credit() never commits; the caller's transaction owns the commit.
- Only the payment confirmation path may call credit().
"""


class LedgerError(Exception):
    """Raised for wallet ledger errors."""
    pass


def credit(user_id: int, amount_cents: int, transaction_id: int) -> WalletLedgerEntry:
    """
    Credit a wallet and append the matching ledger entry.

    Locks the user row so concurrent credits for the same user serialize
    (optimistic version_id protects backends that ignore FOR UPDATE).

    Raises LedgerError if the user is missing or the amount is not positive.
    """
    if amount_cents <= 0:
        raise LedgerError("Credit amount must be positive")

    user = lock_for_update(db.session.query(User).filter_by(id=user_id)).first()
    if not user:
        raise LedgerError(f"User {user_id} not found")

    new_balance = user.balance_cents + amount_cents
    user.balance_cents = new_balance

    entry = WalletLedgerEntry(
        transaction_id=transaction_id,
        user_id=user_id,
        amount_cents=amount_cents,
        resulting_balance_cents=new_balance,
        occurred_at=utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def get_balance(user_id: int) -> int:
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user:
        raise LedgerError(f"User {user_id} not found")
    return user.balance_cents


def list_entries(user_id: int, limit: int = 100) -> list[WalletLedgerEntry]:
    return db.session.query(WalletLedgerEntry).filter_by(
        user_id=user_id
    ).order_by(WalletLedgerEntry.occurred_at.desc(), WalletLedgerEntry.id.desc()).limit(limit).all()


def credited_total(user_id: int, since: datetime | None = None) -> int:
    """Sum of ledger credits for a user, optionally only those at or after since."""
    query = db.session.query(
        db.func.coalesce(db.func.sum(WalletLedgerEntry.amount_cents), 0)
    ).filter(WalletLedgerEntry.user_id == user_id)

    if since is not None:
        query = query.filter(WalletLedgerEntry.occurred_at >= since)

    return int(query.scalar() or 0)


def verify_ledger_consistency(user_id: int) -> dict:
    """
    Check the ledger invariant for one user.

    Returns a report dict; "consistent" is False when the running sum of
    entries does not explain the cached balance.
    """
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user:
        raise LedgerError(f"User {user_id} not found")

    ledger_total = credited_total(user_id)
    expected_balance = user.opening_balance_cents + ledger_total

    return {
        "user_id": user_id,
        "opening_balance_cents": user.opening_balance_cents,
        "ledger_total_cents": ledger_total,
        "balance_cents": user.balance_cents,
        "expected_balance_cents": expected_balance,
        "consistent": expected_balance == user.balance_cents,
    }
