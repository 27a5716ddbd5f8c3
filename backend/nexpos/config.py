# backend/nexpos/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/nexpos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///nexpos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # bcrypt cost for passwords and employee ids
    BCRYPT_ROUNDS = _int_env("BCRYPT_ROUNDS", 12)

    # Wallet funding bounds (cents). Policy constants, not hard limits of the design.
    FUNDING_MIN_CENTS = _int_env("FUNDING_MIN_CENTS", 500)
    FUNDING_MAX_CENTS = _int_env("FUNDING_MAX_CENTS", 500_000)
    FUNDING_CURRENCY = os.environ.get("FUNDING_CURRENCY", "usd")

    # "simulated" keeps intents in memory (dev/demo); "stripe" talks to the real API
    PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "simulated")
    # Simulated intents only pay themselves in DEBUG or TESTING apps
    SIMULATED_GATEWAY_AUTO_SUCCEED = os.environ.get("SIMULATED_GATEWAY_AUTO_SUCCEED", "").lower() in ("1", "true", "yes")
    GATEWAY_API_KEY = os.environ.get("GATEWAY_API_KEY", "")
    GATEWAY_API_BASE = os.environ.get("GATEWAY_API_BASE", "https://api.stripe.com")
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))
    GATEWAY_WEBHOOK_SECRET = os.environ.get("GATEWAY_WEBHOOK_SECRET", "")
    GATEWAY_WEBHOOK_TOLERANCE_SECONDS = _int_env("GATEWAY_WEBHOOK_TOLERANCE_SECONDS", 300)

    # Employee re-verification lifetime. 0 = valid for the rest of the session.
    VERIFICATION_TTL_SECONDS = _int_env("VERIFICATION_TTL_SECONDS", 8 * 60 * 60)

    # An EXECUTING pending command older than this is treated as abandoned
    PENDING_ACTION_STALE_SECONDS = _int_env("PENDING_ACTION_STALE_SECONDS", 300)

    # Reconciliation sweep thresholds
    RECONCILE_AFTER_MINUTES = _int_env("RECONCILE_AFTER_MINUTES", 30)
    ABANDON_AFTER_HOURS = _int_env("ABANDON_AFTER_HOURS", 24)
