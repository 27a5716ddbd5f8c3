# Overview: Flask API routes for guarded operations; every call passes through the verification gate.

"""
Guarded Operations API

POST /api/operations/<operation_type> runs a catalogued operation through
the gate:
- 200 {executed: true, result}: ran now (exempt or already verified)
- 202 {verification_required: true, operation_details}: parked; the client
  prompts for the employee id and calls POST /api/auth/verify-employee-id

Wallet funding has its own entry point (/api/wallet/create-payment-intent)
because its payload is validated before it is parked.
"""

from flask import Blueprint, request, jsonify, current_app, g

from .. import operations
from ..services import verification_service
from ..decorators import require_auth
from .errors import domain_error_response


operations_bp = Blueprint("operations", __name__, url_prefix="/api/operations")


@operations_bp.get("/")
@require_auth
def list_operations_route():
    return jsonify({
        "operations": [
            {"code": code, "name": name, "description": description}
            for code, name, description in operations.GUARDED_OPERATIONS
        ]
    }), 200


@operations_bp.post("/<operation_type>")
@require_auth
def run_operation_route(operation_type: str):
    """
    Request body:
    {
        "operation_details": "SIM swap for +1 555 0100",  (optional, shown in the prompt)
        "payload": {...}  (forwarded to the operation)
    }
    """
    try:
        if operation_type == operations.FUND_TRANSFER:
            return jsonify({"error": "Use /api/wallet/create-payment-intent for wallet funding"}), 400

        data = request.get_json(silent=True) or {}
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            return jsonify({"error": "payload must be an object"}), 400

        operation_details = data.get("operation_details")
        if not operation_details:
            operation_details = operations.get_operation_definition(operation_type)["name"]

        decision = verification_service.require_verification(
            g.session_context,
            operation_type,
            payload,
            operation_details=operation_details,
        )
        return jsonify(decision.to_dict()), 200 if decision.executed else 202

    except Exception as exc:
        response = domain_error_response(exc)
        if response is not None:
            return response
        current_app.logger.exception("Failed to run guarded operation")
        return jsonify({"error": "Internal server error"}), 500
