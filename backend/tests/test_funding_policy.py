"""
Funding permission policy tests.

Verifies:
- Missing or disabled permission -> not_permitted
- Rolling 24h daily cap and calendar-month monthly cap over ledger credits
  and intents still in flight
- Admin upsert validation
"""

from datetime import datetime, timedelta

import pytest

from nexpos.extensions import db
from nexpos.models import PaymentTransaction, WalletLedgerEntry
from nexpos.services import funding_policy_service
from nexpos.services.funding_policy_service import (
    FundingPermissionDeniedError,
    FundingLimitExceededError,
    REASON_NOT_PERMITTED,
    REASON_DAILY_LIMIT,
    REASON_MONTHLY_LIMIT,
)
from nexpos.validation import ValidationError


NOW = datetime(2026, 5, 20, 12, 0, 0)


def _credited(user, amount_cents, at):
    """Record a credited funding transaction at a fixed time."""
    txn = PaymentTransaction(
        user_id=user.id,
        amount_cents=amount_cents,
        currency="usd",
        payment_method="credit_card",
        state="ledger_credited",
        created_at=at,
        completed_at=at,
    )
    db.session.add(txn)
    db.session.flush()
    user.balance_cents += amount_cents
    db.session.add(WalletLedgerEntry(
        transaction_id=txn.id,
        user_id=user.id,
        amount_cents=amount_cents,
        resulting_balance_cents=user.balance_cents,
        occurred_at=at,
    ))
    db.session.commit()
    return txn


def _open_txn(user, amount_cents, state, at):
    txn = PaymentTransaction(
        user_id=user.id,
        amount_cents=amount_cents,
        currency="usd",
        payment_method="credit_card",
        state=state,
        created_at=at,
    )
    db.session.add(txn)
    db.session.commit()
    return txn


def _grant(user, admin, **caps):
    payload = {"can_add_funds": True}
    payload.update(caps)
    return funding_policy_service.upsert_permission(user.id, payload, actor_user_id=admin.id)


class TestPermission:

    def test_no_record_is_not_permitted(self, retailer_user):
        decision = funding_policy_service.can_request_funding(retailer_user.id, 1000, NOW)
        assert decision.allowed is False
        assert decision.reason == REASON_NOT_PERMITTED

    def test_disabled_record_is_not_permitted(self, retailer_user, admin_user):
        funding_policy_service.upsert_permission(
            retailer_user.id, {"can_add_funds": False, "max_daily_cents": 100_000}, admin_user.id
        )
        decision = funding_policy_service.can_request_funding(retailer_user.id, 1000, NOW)
        assert decision.reason == REASON_NOT_PERMITTED

    def test_no_caps_allows_any_amount(self, retailer_user, admin_user):
        _grant(retailer_user, admin_user)
        _credited(retailer_user, 400_000, NOW - timedelta(hours=1))

        decision = funding_policy_service.can_request_funding(retailer_user.id, 400_000, NOW)
        assert decision.allowed is True
        assert decision.daily_remaining_cents is None

    def test_enforce_raises_typed_errors(self, retailer_user, admin_user):
        with pytest.raises(FundingPermissionDeniedError):
            funding_policy_service.enforce_funding_policy(retailer_user.id, 1000, NOW)

        _grant(retailer_user, admin_user, max_daily_cents=500)
        with pytest.raises(FundingLimitExceededError) as exc_info:
            funding_policy_service.enforce_funding_policy(retailer_user.id, 1000, NOW)
        assert exc_info.value.reason == REASON_DAILY_LIMIT


class TestDailyCap:

    def test_eighty_of_hundred_used(self, retailer_user, admin_user):
        _grant(retailer_user, admin_user, max_daily_cents=10_000)
        _credited(retailer_user, 8_000, NOW - timedelta(hours=3))

        over = funding_policy_service.can_request_funding(retailer_user.id, 3_000, NOW)
        assert over.allowed is False
        assert over.reason == REASON_DAILY_LIMIT
        assert over.daily_total_cents == 8_000
        assert over.daily_remaining_cents == 2_000

        under = funding_policy_service.can_request_funding(retailer_user.id, 1_500, NOW)
        assert under.allowed is True

    def test_exact_cap_is_allowed(self, retailer_user, admin_user):
        _grant(retailer_user, admin_user, max_daily_cents=10_000)
        _credited(retailer_user, 8_000, NOW - timedelta(hours=3))

        assert funding_policy_service.can_request_funding(retailer_user.id, 2_000, NOW).allowed is True

    def test_window_is_rolling_24_hours(self, retailer_user, admin_user):
        _grant(retailer_user, admin_user, max_daily_cents=10_000)
        _credited(retailer_user, 8_000, NOW - timedelta(hours=25))

        decision = funding_policy_service.can_request_funding(retailer_user.id, 5_000, NOW)
        assert decision.allowed is True
        assert decision.daily_total_cents == 0

    def test_open_intents_count_toward_cap(self, retailer_user, admin_user):
        _grant(retailer_user, admin_user, max_daily_cents=10_000)
        _open_txn(retailer_user, 8_000, "intent_created", NOW - timedelta(hours=1))

        decision = funding_policy_service.can_request_funding(retailer_user.id, 5_000, NOW)

        assert decision.allowed is False
        assert decision.reason == REASON_DAILY_LIMIT
        assert decision.daily_total_cents == 8_000

    def test_settled_failures_do_not_count(self, retailer_user, admin_user):
        _grant(retailer_user, admin_user, max_daily_cents=10_000)
        _open_txn(retailer_user, 9_000, "failed", NOW - timedelta(hours=1))
        _open_txn(retailer_user, 9_000, "confirmation_error", NOW - timedelta(hours=2))
        _open_txn(retailer_user, 9_000, "intent_created", NOW - timedelta(hours=30))

        assert funding_policy_service.can_request_funding(retailer_user.id, 5_000, NOW).allowed is True


class TestMonthlyCap:

    def test_calendar_month_total(self, retailer_user, admin_user):
        _grant(retailer_user, admin_user, max_monthly_cents=100_000)
        _credited(retailer_user, 90_000, datetime(2026, 5, 2, 9, 0, 0))

        decision = funding_policy_service.can_request_funding(retailer_user.id, 15_000, NOW)
        assert decision.allowed is False
        assert decision.reason == REASON_MONTHLY_LIMIT
        assert decision.monthly_remaining_cents == 10_000

    def test_open_intents_count_toward_month(self, retailer_user, admin_user):
        _grant(retailer_user, admin_user, max_monthly_cents=100_000)
        _credited(retailer_user, 50_000, datetime(2026, 5, 2, 9, 0, 0))
        _open_txn(retailer_user, 40_000, "intent_created", datetime(2026, 5, 10, 9, 0, 0))

        decision = funding_policy_service.can_request_funding(retailer_user.id, 15_000, NOW)

        assert decision.reason == REASON_MONTHLY_LIMIT
        assert decision.monthly_total_cents == 90_000

    def test_previous_month_does_not_count(self, retailer_user, admin_user):
        _grant(retailer_user, admin_user, max_monthly_cents=100_000)
        _credited(retailer_user, 90_000, datetime(2026, 4, 30, 23, 0, 0))

        decision = funding_policy_service.can_request_funding(retailer_user.id, 15_000, NOW)
        assert decision.allowed is True
        assert decision.monthly_total_cents == 0

    def test_daily_checked_before_monthly(self, retailer_user, admin_user):
        _grant(retailer_user, admin_user, max_daily_cents=5_000, max_monthly_cents=6_000)
        _credited(retailer_user, 4_000, NOW - timedelta(hours=1))

        decision = funding_policy_service.can_request_funding(retailer_user.id, 3_000, NOW)
        assert decision.reason == REASON_DAILY_LIMIT


class TestAdministration:

    def test_describe_defaults(self, retailer_user):
        described = funding_policy_service.describe_permission(retailer_user.id)
        assert described == {
            "user_id": retailer_user.id,
            "can_add_funds": False,
            "max_daily_cents": None,
            "max_monthly_cents": None,
        }

    def test_negative_cap_rejected(self, retailer_user, admin_user):
        with pytest.raises(ValidationError):
            funding_policy_service.upsert_permission(
                retailer_user.id, {"can_add_funds": True, "max_daily_cents": -1}, admin_user.id
            )

    def test_create_requires_can_add_funds(self, retailer_user, admin_user):
        with pytest.raises(ValidationError):
            funding_policy_service.upsert_permission(
                retailer_user.id, {"max_daily_cents": 1000}, admin_user.id
            )

    def test_unknown_field_rejected(self, retailer_user, admin_user):
        with pytest.raises(ValidationError):
            funding_policy_service.upsert_permission(
                retailer_user.id, {"can_add_funds": True, "user_id": 99}, admin_user.id
            )

    def test_unknown_user_rejected(self, admin_user):
        with pytest.raises(ValueError):
            funding_policy_service.upsert_permission(9999, {"can_add_funds": True}, admin_user.id)

    def test_partial_update_keeps_other_fields(self, retailer_user, admin_user):
        _grant(retailer_user, admin_user, max_daily_cents=10_000, max_monthly_cents=50_000)

        updated = funding_policy_service.upsert_permission(
            retailer_user.id, {"max_daily_cents": 20_000}, admin_user.id
        )

        assert updated.can_add_funds is True
        assert updated.max_daily_cents == 20_000
        assert updated.max_monthly_cents == 50_000
        assert len(funding_policy_service.list_permissions()) == 1
