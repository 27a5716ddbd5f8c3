# Overview: Service-layer operations for wallet funding permissions and limits.

"""
Funding Permission Policy

WHY: Administrators control who may add funds to a wallet and how much.
The decision is pure logic over the permission record and the wallet's
credited and in-flight funding.

WINDOWS:
- Daily: rolling 24 hours ending now
- Monthly: calendar month (UTC) containing now; chosen for auditability,
  it lines up with monthly wallet reports

Ledger credits count toward the caps, and so do in-flight transactions
(created, intent_created, gateway_confirmed) opened inside the window, so
several intents opened before any is confirmed cannot pass the cap one by
one. The server re-evaluates the decision immediately before opening a
gateway intent (see payment_service.create_intent), under the permission
row lock; the client-side check is advisory.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from ..extensions import db
from ..models import FundingPermission, PaymentTransaction, User
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_funding_permission,
)
from . import wallet_ledger_service
from nexpos.time_utils import utcnow, start_of_month


REASON_NOT_PERMITTED = "not_permitted"
REASON_DAILY_LIMIT = "daily_limit_exceeded"
REASON_MONTHLY_LIMIT = "monthly_limit_exceeded"

DAILY_WINDOW = timedelta(hours=24)

# Transaction states that may still become a ledger credit
IN_FLIGHT_STATES = ("created", "intent_created", "gateway_confirmed")

FUNDING_PERMISSION_POLICY = ModelValidationPolicy(
    writable_fields={"can_add_funds", "max_daily_cents", "max_monthly_cents", "notes"},
    required_on_create={"can_add_funds"},
)


class FundingPolicyError(Exception):
    """Base class for funding policy denials. reason is a stable code."""
    reason = "denied"

    def __init__(self, message: str, decision: "FundingDecision | None" = None):
        super().__init__(message)
        self.decision = decision


class FundingPermissionDeniedError(FundingPolicyError):
    """Funding disabled for this user (requires an admin)."""
    reason = REASON_NOT_PERMITTED


class FundingLimitExceededError(FundingPolicyError):
    """Daily or monthly cap would be exceeded (reduce amount or wait)."""

    def __init__(self, message: str, decision: "FundingDecision"):
        super().__init__(message, decision)
        self.reason = decision.reason


@dataclass(frozen=True)
class FundingDecision:
    allowed: bool
    reason: str | None = None
    daily_total_cents: int = 0
    monthly_total_cents: int = 0
    max_daily_cents: int | None = None
    max_monthly_cents: int | None = None

    @property
    def daily_remaining_cents(self) -> int | None:
        if self.max_daily_cents is None:
            return None
        return max(self.max_daily_cents - self.daily_total_cents, 0)

    @property
    def monthly_remaining_cents(self) -> int | None:
        if self.max_monthly_cents is None:
            return None
        return max(self.max_monthly_cents - self.monthly_total_cents, 0)

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "daily_total_cents": self.daily_total_cents,
            "monthly_total_cents": self.monthly_total_cents,
            "daily_remaining_cents": self.daily_remaining_cents,
            "monthly_remaining_cents": self.monthly_remaining_cents,
        }


def get_permission(user_id: int) -> FundingPermission | None:
    return db.session.query(FundingPermission).filter_by(user_id=user_id).first()


def describe_permission(user_id: int) -> dict:
    """Permission as the wallet UI sees it; defaults when no record exists."""
    permission = get_permission(user_id)
    if not permission:
        return {
            "user_id": user_id,
            "can_add_funds": False,
            "max_daily_cents": None,
            "max_monthly_cents": None,
        }
    return permission.to_dict()


def in_flight_total(user_id: int, since: datetime) -> int:
    """Sum of funding transactions opened at or after since and not yet settled."""
    total = db.session.query(
        db.func.coalesce(db.func.sum(PaymentTransaction.amount_cents), 0)
    ).filter(
        PaymentTransaction.user_id == user_id,
        PaymentTransaction.state.in_(IN_FLIGHT_STATES),
        PaymentTransaction.created_at >= since,
    ).scalar()
    return int(total or 0)


def decide(permission: FundingPermission | None, user_id: int, amount_cents: int, now: datetime) -> FundingDecision:
    """Pure decision over an already-loaded permission record."""
    if not permission or not permission.can_add_funds:
        return FundingDecision(allowed=False, reason=REASON_NOT_PERMITTED)

    day_start = now - DAILY_WINDOW
    month_start = start_of_month(now)
    daily_total = wallet_ledger_service.credited_total(user_id, since=day_start) + in_flight_total(user_id, day_start)
    monthly_total = wallet_ledger_service.credited_total(user_id, since=month_start) + in_flight_total(user_id, month_start)

    common = dict(
        daily_total_cents=daily_total,
        monthly_total_cents=monthly_total,
        max_daily_cents=permission.max_daily_cents,
        max_monthly_cents=permission.max_monthly_cents,
    )

    if permission.max_daily_cents is not None and daily_total + amount_cents > permission.max_daily_cents:
        return FundingDecision(allowed=False, reason=REASON_DAILY_LIMIT, **common)

    if permission.max_monthly_cents is not None and monthly_total + amount_cents > permission.max_monthly_cents:
        return FundingDecision(allowed=False, reason=REASON_MONTHLY_LIMIT, **common)

    return FundingDecision(allowed=True, **common)


def can_request_funding(user_id: int, amount_cents: int, now: datetime | None = None) -> FundingDecision:
    """
    Decide whether user_id may add amount_cents now.

    Returns FundingDecision(allowed=False, reason=...) with reason one of
    not_permitted, daily_limit_exceeded, monthly_limit_exceeded.
    """
    return decide(get_permission(user_id), user_id, amount_cents, now or utcnow())


def raise_for_decision(decision: FundingDecision) -> None:
    if decision.allowed:
        return
    if decision.reason == REASON_NOT_PERMITTED:
        raise FundingPermissionDeniedError("Wallet funding is not enabled for this account", decision)
    if decision.reason == REASON_DAILY_LIMIT:
        raise FundingLimitExceededError(
            f"Daily funding limit exceeded ({decision.daily_remaining_cents} cents remaining today)",
            decision,
        )
    raise FundingLimitExceededError(
        f"Monthly funding limit exceeded ({decision.monthly_remaining_cents} cents remaining this month)",
        decision,
    )


def enforce_funding_policy(user_id: int, amount_cents: int, now: datetime | None = None) -> FundingDecision:
    """can_request_funding, raising FundingPolicyError subclasses on denial."""
    decision = can_request_funding(user_id, amount_cents, now)
    raise_for_decision(decision)
    return decision


# =============================================================================
# ADMINISTRATION
# =============================================================================

def upsert_permission(user_id: int, payload: dict, actor_user_id: int | None) -> FundingPermission:
    """
    Create or update a user's funding permission (admin only).

    Raises ValidationError for bad payloads, ValueError for unknown users.
    """
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user:
        raise ValueError(f"User {user_id} not found")

    permission = get_permission(user_id)
    patch = validate_payload(
        model=FundingPermission,
        payload=payload,
        policy=FUNDING_PERMISSION_POLICY,
        partial=permission is not None,
    )
    enforce_rules_funding_permission(patch)

    now = utcnow()
    if permission is None:
        permission = FundingPermission(
            user_id=user_id,
            created_by_user_id=actor_user_id,
            created_at=now,
        )
        db.session.add(permission)

    for key, value in patch.items():
        setattr(permission, key, value)
    permission.updated_by_user_id = actor_user_id
    permission.updated_at = now

    db.session.commit()
    return permission


def list_permissions() -> list[FundingPermission]:
    return db.session.query(FundingPermission).order_by(FundingPermission.user_id).all()
