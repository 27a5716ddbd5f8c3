# Overview: System health and version endpoints.

"""
System health and version endpoints.

Checks the database and the session/wallet tables; used by load balancers
and deployment scripts.
"""

import sys
import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import User, SessionToken, PaymentTransaction
from nexpos.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """
    Check database connectivity and basic queries.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        user_count = db.session.query(User).count()
        active_sessions = db.session.query(SessionToken).filter_by(is_revoked=False).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "users": user_count,
                "active_sessions": active_sessions,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_wallet_health() -> dict:
    """
    Degraded when funding transactions are stuck waiting for reconciliation
    or an integrity alarm has parked one in confirmation_error.
    """
    start_time = time.time()
    try:
        from ..services import payment_service

        confirmation_errors = db.session.query(PaymentTransaction).filter_by(
            state=payment_service.STATE_CONFIRMATION_ERROR
        ).count()
        pending = db.session.query(PaymentTransaction).filter(
            PaymentTransaction.state.in_((payment_service.STATE_CREATED, payment_service.STATE_INTENT_CREATED))
        ).count()

        elapsed_ms = (time.time() - start_time) * 1000
        details = {
            "pending_transactions": pending,
            "confirmation_errors": confirmation_errors,
            "gateway": current_app.config.get("PAYMENT_GATEWAY"),
        }

        if confirmation_errors:
            return {
                "status": "degraded",
                "latency_ms": round(elapsed_ms, 2),
                "warning": f"{confirmation_errors} transactions need operator review",
                "details": details,
            }
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2), "details": details}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Wallet health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Wallet check error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (still operational)
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    wallet_health = check_wallet_health()

    all_checks = [database_health, wallet_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "wallet": wallet_health,
        }
    }

    return response, http_status


@system_bp.get("/version")
def version():
    """Non-sensitive deployment info (no secrets, credentials or paths)."""
    env = "production" if not current_app.debug else "development"

    return {
        "api_version": "1.0.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    }
