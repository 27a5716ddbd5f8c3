# Overview: Flask API routes for auth and employee verification; parses input and returns JSON responses.

"""
Authentication and Employee Verification API routes

SECURITY FEATURES:
- Login throttling to prevent brute-force attacks
- Account lockout after repeated failed attempts
- Session management with token-based auth
- Employee-id re-verification for guarded operations (with its own lockout)
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import auth_service
from ..services import session_service
from ..services import login_throttle_service
from ..services import verification_service
from ..decorators import require_auth, bearer_token
from .errors import domain_error_response


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/register")
def register_route():
    """
    Self-registration is disabled for security.

    Users can only be created by administrators via:
    - POST /api/admin/users (admin role)
    - CLI: flask users create
    """
    return jsonify({
        "error": "Self-registration is disabled. Contact an administrator to create an account."
    }), 403


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Token must be included in Authorization header for protected routes.
    The response carries the principal, including whether this session is
    exempt from employee re-verification.
    """
    try:
        data = request.get_json(silent=True) or {}
        username = data.get("username") or data.get("email") or data.get("identifier")
        password = data.get("password")

        if not all([username, password]):
            return jsonify({"error": "username/email and password required"}), 400

        user_agent = request.headers.get("User-Agent")
        ip_address = request.remote_addr

        is_locked, seconds_remaining = login_throttle_service.is_account_locked(username)
        if is_locked:
            minutes_remaining = (seconds_remaining // 60) + 1 if seconds_remaining else 15
            return jsonify({
                "error": "Account temporarily locked due to too many failed login attempts",
                "locked": True,
                "retry_after_seconds": seconds_remaining,
                "retry_after_minutes": minutes_remaining,
            }), 429

        user = auth_service.authenticate(username, password)

        if not user:
            failed_count = login_throttle_service.record_failed_attempt(
                identifier=username,
                ip_address=ip_address,
                user_agent=user_agent,
                reason="Invalid credentials"
            )

            remaining = login_throttle_service.MAX_FAILED_ATTEMPTS - failed_count

            if remaining <= 0:
                return jsonify({
                    "error": "Account locked due to too many failed login attempts",
                    "locked": True,
                    "retry_after_minutes": 15,
                }), 429
            elif remaining <= 3:
                return jsonify({
                    "error": "Invalid credentials",
                    "warning": f"{remaining} attempts remaining before account lockout"
                }), 401
            else:
                return jsonify({"error": "Invalid credentials"}), 401

        login_throttle_service.record_successful_login(
            user_id=user.id,
            identifier=username,
            ip_address=ip_address,
            user_agent=user_agent
        )

        session, token = session_service.create_session(
            user_id=user.id,
            user_agent=user_agent,
            ip_address=ip_address
        )
        principal = session_service.build_principal(user, session)

        return jsonify({
            "user": user.to_dict(),
            "principal": principal.to_dict(),
            "token": token,
            "session": session.to_dict(),
            "message": "Login successful"
        }), 200

    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/lockout-status/<identifier>")
def lockout_status_route(identifier: str):
    """Public: lets a user see whether their login is locked and until when."""
    status = login_throttle_service.get_lockout_status(identifier)
    return jsonify(status)


@auth_bp.post("/logout")
def logout_route():
    """
    Revoke session token (logout).

    Ends the verification session and drops any pending guarded operation.
    """
    try:
        token = bearer_token()
        if not token:
            return jsonify({"error": "Authorization header required"}), 401

        revoked = session_service.revoke_session(token, reason="User logout")

        if not revoked:
            return jsonify({"error": "Invalid or expired token"}), 401

        return jsonify({"message": "Logout successful"}), 200

    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    """Current principal plus verification state."""
    context = g.session_context
    return jsonify({
        "user": g.current_user.to_dict(),
        "principal": g.principal.to_dict(),
        "verification": verification_service.get_verification_state(context),
    }), 200


# =============================================================================
# EMPLOYEE VERIFICATION
# =============================================================================

@auth_bp.get("/verification")
@require_auth
def verification_state_route():
    return jsonify(verification_service.get_verification_state(g.session_context)), 200


@auth_bp.post("/verify-employee-id")
@require_auth
def verify_employee_id_route():
    """
    Verify the employee id and resume the pending guarded operation.

    Request body:
    {
        "employee_id": "EMP-7"
    }

    Returns:
    - 200 {verified, message, resumed}: resumed is the pending operation's
      result, or null if nothing was pending
    - 400 invalid id (the pending operation stays pending)
    - 423 too many failed attempts
    - resumed-operation errors use that operation's status code
    """
    try:
        data = request.get_json(silent=True) or {}
        employee_id = data.get("employee_id") or data.get("employeeId")

        outcome = verification_service.on_verified(
            g.session_context,
            employee_id,
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
        return jsonify(outcome.to_dict()), 200

    except Exception as exc:
        response = domain_error_response(exc)
        if response is not None:
            return response
        current_app.logger.exception("Failed to verify employee id")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/verification/cancel")
@require_auth
def cancel_verification_route():
    """Drop the pending guarded operation without running it."""
    try:
        cancelled = verification_service.on_cancelled(
            g.session_context,
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
        return jsonify({"cancelled": cancelled}), 200

    except Exception as exc:
        response = domain_error_response(exc)
        if response is not None:
            return response
        current_app.logger.exception("Failed to cancel pending operation")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/verification/reset")
@require_auth
def reset_verification_route():
    """Forget this session's verification (e.g. terminal handed to a colleague)."""
    verification_service.reset_verification(g.session_context)
    return jsonify({"message": "Verification cleared"}), 200
