# Overview: Translation of domain errors raised by the gate and wallet services into JSON responses.

from flask import jsonify

from ..operations import UnknownOperationError
from ..validation import ValidationError, ConflictError
from ..services.permission_service import PermissionDeniedError
from ..services.verification_service import (
    VerificationFailedError,
    VerificationLockedError,
    VerificationNotRequiredError,
    PendingActionConflictError,
)
from ..services.funding_policy_service import FundingPermissionDeniedError, FundingLimitExceededError
from ..services.payment_service import (
    PaymentError,
    PaymentFailedError,
    ConfirmationMismatchError,
    IntegrityAlarmError,
)
from ..services.payment_gateway import GatewayError


INTEGRITY_ALARM_MESSAGE = "payment could not be confirmed, contact support"


def domain_error_response(exc: Exception):
    """
    Map a domain exception to (json, status), or None if exc is not ours.

    Order matters: subclasses are matched before their bases.
    """
    if isinstance(exc, (ValidationError, UnknownOperationError)):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, ConflictError):
        return jsonify({"error": str(exc)}), 409

    if isinstance(exc, VerificationFailedError):
        return jsonify({"error": str(exc), "verified": False}), 400
    if isinstance(exc, VerificationLockedError):
        return jsonify({
            "error": str(exc),
            "locked": True,
            "retry_after_seconds": exc.seconds_remaining,
        }), 423
    if isinstance(exc, VerificationNotRequiredError):
        return jsonify({"error": str(exc)}), 403
    if isinstance(exc, PendingActionConflictError):
        return jsonify({"error": str(exc)}), 409

    if isinstance(exc, PermissionDeniedError):
        return jsonify({"error": "Permission denied", "message": str(exc)}), 403

    if isinstance(exc, FundingPermissionDeniedError):
        return jsonify({"error": str(exc), "reason": exc.reason}), 403
    if isinstance(exc, FundingLimitExceededError):
        return jsonify({
            "error": str(exc),
            "reason": exc.reason,
            "limits": exc.decision.to_dict() if exc.decision else None,
        }), 422

    if isinstance(exc, IntegrityAlarmError):
        return jsonify({"error": INTEGRITY_ALARM_MESSAGE}), 500
    if isinstance(exc, ConfirmationMismatchError):
        return jsonify({"error": str(exc)}), 409
    if isinstance(exc, PaymentFailedError):
        return jsonify({"error": str(exc)}), 402
    if isinstance(exc, PaymentError):
        return jsonify({"error": str(exc)}), 400

    if isinstance(exc, GatewayError):
        return jsonify({"error": f"Payment gateway error: {exc}"}), 502

    return None
