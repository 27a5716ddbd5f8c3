"""
Login and Employee-ID Verification Throttling Service

WHY: Prevent brute-force attacks on passwords and on employee ids.
After too many failures, the account (or its verification) is temporarily locked.

SECURITY FEATURES:
- Tracks failed attempts in the security_events table
- Login: lockout after MAX_FAILED_ATTEMPTS failures within LOCKOUT_WINDOW
- Employee-id verification: lockout after MAX_FAILED_VERIFICATIONS within LOCKOUT_WINDOW
- A success resets the lockout clock
"""

from datetime import timedelta
from ..extensions import db
from ..models import SecurityEvent, User
from nexpos.time_utils import utcnow


# Configuration constants
MAX_FAILED_ATTEMPTS = 10  # Lock login after 10 failed attempts
MAX_FAILED_VERIFICATIONS = 5  # Lock employee-id verification after 5 failures
LOCKOUT_WINDOW = timedelta(minutes=15)  # Within 15 minutes
LOCKOUT_DURATION = timedelta(minutes=15)  # Lockout for 15 minutes

LOGIN_FAILED = "LOGIN_FAILED"
LOGIN_SUCCESS = "LOGIN_SUCCESS"
VERIFICATION_FAILED = "EMPLOYEE_VERIFICATION_FAILED"
VERIFICATION_SUCCESS = "EMPLOYEE_VERIFIED"


def _last_success_at(event_type: str, action: str):
    last = db.session.query(SecurityEvent).filter(
        SecurityEvent.event_type == event_type,
        SecurityEvent.action == action,
    ).order_by(SecurityEvent.occurred_at.desc()).first()
    return last.occurred_at if last else None


def _count_recent_failures(event_type: str, action: str, success_type: str) -> int:
    cutoff = utcnow() - LOCKOUT_WINDOW
    last_success = _last_success_at(success_type, action)
    if last_success and last_success > cutoff:
        cutoff = last_success

    return db.session.query(SecurityEvent).filter(
        SecurityEvent.event_type == event_type,
        SecurityEvent.action == action,
        SecurityEvent.occurred_at > cutoff,
    ).count()


def _lock_status(event_type: str, action: str, success_type: str, max_attempts: int) -> tuple[bool, int | None]:
    failed_count = _count_recent_failures(event_type, action, success_type)
    if failed_count < max_attempts:
        return False, None

    most_recent = db.session.query(SecurityEvent).filter(
        SecurityEvent.event_type == event_type,
        SecurityEvent.action == action,
    ).order_by(SecurityEvent.occurred_at.desc()).first()

    if most_recent:
        lockout_end = most_recent.occurred_at + LOCKOUT_DURATION
        now = utcnow()
        if now < lockout_end:
            return True, int((lockout_end - now).total_seconds())

    return False, None


# =============================================================================
# LOGIN
# =============================================================================

def get_recent_failed_attempts(identifier: str) -> int:
    """Count failed logins for a username/email within LOCKOUT_WINDOW."""
    return _count_recent_failures(LOGIN_FAILED, identifier, LOGIN_SUCCESS)


def is_account_locked(identifier: str) -> tuple[bool, int | None]:
    """
    Check if an account is currently locked due to too many failed attempts.

    Returns:
    - (True, seconds_remaining) if locked
    - (False, None) if not locked
    """
    return _lock_status(LOGIN_FAILED, identifier, LOGIN_SUCCESS, MAX_FAILED_ATTEMPTS)


def record_failed_attempt(
    identifier: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
    reason: str = "Invalid credentials"
) -> int:
    """
    Record a failed login attempt.

    Returns the total number of recent failed attempts.
    """
    user = db.session.query(User).filter(
        db.or_(User.username == identifier, User.email == identifier)
    ).first()

    event = SecurityEvent(
        user_id=user.id if user else None,
        event_type=LOGIN_FAILED,
        resource="/api/auth/login",
        action=identifier,  # Store the identifier for tracking
        success=False,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow()
    )

    db.session.add(event)
    db.session.commit()

    return get_recent_failed_attempts(identifier)


def record_successful_login(
    user_id: int,
    identifier: str,
    ip_address: str | None = None,
    user_agent: str | None = None
) -> None:
    """Record a successful login (resets the lockout clock)."""
    event = SecurityEvent(
        user_id=user_id,
        event_type=LOGIN_SUCCESS,
        resource="/api/auth/login",
        action=identifier,
        success=True,
        reason=None,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow()
    )

    db.session.add(event)
    db.session.commit()


# =============================================================================
# EMPLOYEE-ID VERIFICATION
# =============================================================================

def _verification_key(user_id: int) -> str:
    return f"user:{user_id}"


def is_verification_locked(user_id: int) -> tuple[bool, int | None]:
    return _lock_status(
        VERIFICATION_FAILED, _verification_key(user_id), VERIFICATION_SUCCESS, MAX_FAILED_VERIFICATIONS
    )


def record_failed_verification(
    user_id: int,
    operation_type: str | None,
    reason: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> int:
    """Record a failed employee-id verification. Returns recent failure count."""
    event = SecurityEvent(
        user_id=user_id,
        event_type=VERIFICATION_FAILED,
        resource=operation_type,
        action=_verification_key(user_id),
        success=False,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow()
    )
    db.session.add(event)
    db.session.commit()

    return _count_recent_failures(VERIFICATION_FAILED, _verification_key(user_id), VERIFICATION_SUCCESS)


def record_successful_verification(
    user_id: int,
    operation_type: str | None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    event = SecurityEvent(
        user_id=user_id,
        event_type=VERIFICATION_SUCCESS,
        resource=operation_type,
        action=_verification_key(user_id),
        success=True,
        reason=None,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow()
    )
    db.session.add(event)
    db.session.commit()


def get_lockout_status(identifier: str) -> dict:
    """
    Get detailed login lockout status for an account.
    """
    failed_count = get_recent_failed_attempts(identifier)
    is_locked, seconds_remaining = is_account_locked(identifier)

    return {
        "locked": is_locked,
        "failed_attempts": failed_count,
        "max_attempts": MAX_FAILED_ATTEMPTS,
        "seconds_until_unlock": seconds_remaining,
        "lockout_window_minutes": int(LOCKOUT_WINDOW.total_seconds() / 60),
        "lockout_duration_minutes": int(LOCKOUT_DURATION.total_seconds() / 60),
    }
