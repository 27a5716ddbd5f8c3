# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

"""
Admin routes for users, employee ids, and wallet funding permissions.

Provides endpoints for:
- User management (list, create, deactivate)
- Employee id assignment (used by the verification gate)
- Wallet funding permissions (list, get, upsert)
- Audit (security events, ledger consistency, reconciliation sweep)

All endpoints require an authenticated admin.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..identity import ROLE_ADMIN
from ..models import User
from ..services import (
    auth_service,
    session_service,
    permission_service,
    funding_policy_service,
    payment_service,
    wallet_ledger_service,
)
from ..services.auth_service import PasswordValidationError
from ..validation import ValidationError
from ..decorators import require_auth, require_role
from .errors import domain_error_response

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


# =============================================================================
# USER MANAGEMENT
# =============================================================================

@admin_bp.get("/users")
@require_auth
@require_role(ROLE_ADMIN)
def list_users():
    """
    List users.

    Query params:
    - include_inactive: bool (default false)
    - role: filter by role
    """
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    role = request.args.get("role")

    query = db.session.query(User)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    if role:
        query = query.filter_by(role=role)

    users = query.order_by(User.username).all()
    return jsonify({"users": [u.to_dict() for u in users], "count": len(users)})


@admin_bp.get("/users/<int:user_id>")
@require_auth
@require_role(ROLE_ADMIN)
def get_user(user_id: int):
    user = db.session.get(User, user_id)
    if not user:
        return jsonify({"error": "User not found"}), 404
    return jsonify({"user": user.to_dict()})


@admin_bp.post("/users")
@require_auth
@require_role(ROLE_ADMIN)
def create_user():
    """
    Create a new user.

    Request body:
    - username: str (required)
    - email: str (required)
    - password: str (required)
    - role: admin | employee | retailer | customer (required)
    - employee_role: str (optional, employees only)
    - employee_id: str (optional, employees only; stored hashed)
    """
    try:
        data = request.get_json(silent=True) or {}
        username = data.get("username")
        email = data.get("email")
        password = data.get("password")
        role = data.get("role")

        if not all([username, email, password, role]):
            return jsonify({"error": "username, email, password, and role required"}), 400

        user = auth_service.create_user(
            username,
            email,
            password,
            role,
            employee_role=data.get("employee_role"),
            employee_id=data.get("employee_id"),
        )

        permission_service.log_security_event(
            user_id=g.current_user.id,
            event_type="USER_CREATED",
            success=True,
            resource="/api/admin/users",
            action=f"Created user: {username}",
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent")
        )

        return jsonify({"user": user.to_dict(), "message": "User created successfully"}), 201

    except PasswordValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create user")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.put("/users/<int:user_id>/employee-id")
@require_auth
@require_role(ROLE_ADMIN)
def set_employee_id(user_id: int):
    """
    Assign or rotate an employee's verification id.

    Request body: {"employee_id": "EMP-7"}
    """
    try:
        data = request.get_json(silent=True) or {}
        employee_id = data.get("employee_id")
        if not employee_id or not str(employee_id).strip():
            return jsonify({"error": "employee_id required"}), 400

        user = auth_service.set_employee_id(user_id, str(employee_id))

        permission_service.log_security_event(
            user_id=g.current_user.id,
            event_type="EMPLOYEE_ID_SET",
            success=True,
            resource=f"/api/admin/users/{user_id}/employee-id",
            action=f"Set employee id for: {user.username}",
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent")
        )
        return jsonify({"user": user.to_dict(), "message": "Employee ID updated"}), 200

    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set employee id")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/users/<int:user_id>/deactivate")
@require_auth
@require_role(ROLE_ADMIN)
def deactivate_user(user_id: int):
    """
    Deactivate a user account and revoke all their sessions.

    Revoking a session also drops its pending guarded operation.
    """
    user = db.session.get(User, user_id)

    if not user:
        return jsonify({"error": "User not found"}), 404

    if not user.is_active:
        return jsonify({"error": "User is already deactivated"}), 400

    if user.id == g.current_user.id:
        return jsonify({"error": "Cannot deactivate your own account"}), 400

    user.is_active = False

    revoked_count = session_service.revoke_all_user_sessions(
        user_id=user.id,
        reason="Account deactivated by admin"
    )

    db.session.commit()

    permission_service.log_security_event(
        user_id=g.current_user.id,
        event_type="USER_DEACTIVATED",
        success=True,
        resource=f"/api/admin/users/{user_id}/deactivate",
        action=f"Deactivated user: {user.username}",
        reason=f"Revoked {revoked_count} sessions",
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent")
    )

    return jsonify({
        "message": f"User {user.username} deactivated",
        "sessions_revoked": revoked_count
    })


# =============================================================================
# WALLET FUNDING PERMISSIONS
# =============================================================================

@admin_bp.get("/wallet-permissions")
@require_auth
@require_role(ROLE_ADMIN)
def list_wallet_permissions():
    permissions = funding_policy_service.list_permissions()
    return jsonify({"permissions": [p.to_dict() for p in permissions], "count": len(permissions)})


@admin_bp.get("/wallet-permissions/<int:user_id>")
@require_auth
@require_role(ROLE_ADMIN)
def get_wallet_permission(user_id: int):
    return jsonify(funding_policy_service.describe_permission(user_id))


@admin_bp.put("/wallet-permissions/<int:user_id>")
@require_auth
@require_role(ROLE_ADMIN)
def upsert_wallet_permission(user_id: int):
    """
    Create or update a user's funding permission.

    Request body (all optional on update):
    {
        "can_add_funds": true,
        "max_daily_cents": 10000,  (null = no cap)
        "max_monthly_cents": 100000,  (null = no cap)
        "notes": "Approved by finance"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        permission = funding_policy_service.upsert_permission(user_id, data, g.current_user.id)

        permission_service.log_security_event(
            user_id=g.current_user.id,
            event_type="FUNDING_PERMISSION_UPDATED",
            success=True,
            resource=f"/api/admin/wallet-permissions/{user_id}",
            action=f"Set funding permission for user {user_id}",
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent")
        )
        return jsonify(permission.to_dict()), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to update funding permission")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# AUDIT
# =============================================================================

@admin_bp.get("/security-events")
@require_auth
@require_role(ROLE_ADMIN)
def list_security_events():
    """
    Query params:
    - user_id: int
    - event_type: e.g. PAYMENT_INTEGRITY_ALARM
    - limit: int (default 100, max 500)
    """
    events = permission_service.get_security_events(
        user_id=request.args.get("user_id", type=int),
        event_type=request.args.get("event_type"),
        limit=min(request.args.get("limit", 100, type=int), 500),
    )
    return jsonify({"events": [e.to_dict() for e in events], "count": len(events)})


@admin_bp.get("/wallet/ledger-check/<int:user_id>")
@require_auth
@require_role(ROLE_ADMIN)
def ledger_check(user_id: int):
    try:
        return jsonify(wallet_ledger_service.verify_ledger_consistency(user_id))
    except wallet_ledger_service.LedgerError as e:
        return jsonify({"error": str(e)}), 404


@admin_bp.post("/wallet/reconcile")
@require_auth
@require_role(ROLE_ADMIN)
def reconcile_wallet_transactions():
    """Run the reconciliation sweep now (normally run from cron via the CLI)."""
    try:
        summary = payment_service.reconcile_pending_transactions()
        return jsonify(summary), 200
    except Exception as exc:
        response = domain_error_response(exc)
        if response is not None:
            return response
        current_app.logger.exception("Failed to reconcile wallet transactions")
        return jsonify({"error": "Internal server error"}), 500
