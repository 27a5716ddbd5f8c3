# Overview: Service-layer operations for auth; encapsulates business logic and database work.

"""
Authentication Service

WHY: Every action must be attributable. Uses bcrypt for secure password
hashing and validates password strength.

Also owns the employee-id identity check used by the verification gate:
employee ids are secrets the employee re-enters before sensitive actions,
so they are stored bcrypt-hashed exactly like passwords.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor BCRYPT_ROUNDS, default 12)
- Minimum 8 characters required
- Must contain uppercase, lowercase, digit, and special char
- Session tokens managed separately (see session_service.py)
"""

import bcrypt
import re
from flask import current_app

from ..extensions import db
from ..identity import Principal, VALID_ROLES, ROLE_EMPLOYEE
from ..models import User
from nexpos.time_utils import utcnow


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


class EmployeeIdError(Exception):
    """Raised when an employee id cannot be verified. Message is user-facing."""
    pass


def _bcrypt_rounds() -> int:
    return int(current_app.config.get("BCRYPT_ROUNDS", 12))


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character (!@#$%^&*(),.'":{}|<>)

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=_bcrypt_rounds())
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    WHY timing-safe: bcrypt.checkpw() prevents timing attacks automatically.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed hash in the database
        return False


def normalize_employee_id(employee_id: str) -> str:
    # Ids compare exactly; only surrounding whitespace is dropped
    return (employee_id or "").strip()


def hash_employee_id(employee_id: str) -> str:
    normalized = normalize_employee_id(employee_id)
    if not normalized:
        raise ValueError("Employee ID cannot be blank")
    if len(normalized) > 64:
        raise ValueError("Employee ID exceeds max length 64")
    salt = bcrypt.gensalt(rounds=_bcrypt_rounds())
    return bcrypt.hashpw(normalized.encode('utf-8'), salt).decode('utf-8')


def verify_employee_id(employee_id: str, principal: Principal) -> str:
    """
    Check an employee id against the employee directory (the users table).

    Returns the normalized employee id on success.

    Raises EmployeeIdError with a user-facing message when:
    - the principal is not an employee
    - the account no longer exists or is inactive
    - no employee id was ever assigned (admin must set one)
    - the id does not match
    """
    if principal.role != ROLE_EMPLOYEE:
        raise EmployeeIdError("Employee verification not required for your role")

    normalized = normalize_employee_id(employee_id)
    if not normalized:
        raise EmployeeIdError("Employee ID is required")

    user = db.session.query(User).filter_by(id=principal.id).first()
    if not user or not user.is_active:
        raise EmployeeIdError("User not found")

    if not user.employee_id_hash:
        raise EmployeeIdError("Employee ID not set for this user. Please contact admin.")

    try:
        matches = bcrypt.checkpw(normalized.encode('utf-8'), user.employee_id_hash.encode('utf-8'))
    except ValueError:
        matches = False

    if not matches:
        raise EmployeeIdError("Invalid Employee ID. Please check and try again.")

    return normalized


def create_user(
    username: str,
    email: str,
    password: str,
    role: str,
    employee_role: str | None = None,
    employee_id: str | None = None,
    opening_balance_cents: int = 0,
) -> User:
    """
    Create new user with bcrypt password hashing.

    Password must meet strength requirements or PasswordValidationError will be raised.
    Username and email must be unique or ValueError will be raised.

    Employees should be created with an employee_id; without one they can
    log in but every guarded operation will fail verification until an
    admin sets it.
    """
    if role not in VALID_ROLES:
        raise ValueError(f"Invalid role: {role}. Must be one of {list(VALID_ROLES)}")

    if employee_role and role != ROLE_EMPLOYEE:
        raise ValueError("employee_role only applies to employees")

    if opening_balance_cents < 0:
        raise ValueError("opening_balance_cents must be >= 0")

    existing = db.session.query(User).filter(
        db.or_(User.username == username, User.email == email)
    ).first()

    if existing:
        raise ValueError("Username or email already exists")

    # Hash password with bcrypt (validates strength automatically)
    password_hash = hash_password(password)

    user = User(
        username=username,
        email=email,
        password_hash=password_hash,
        role=role,
        employee_role=employee_role,
        employee_id_hash=hash_employee_id(employee_id) if employee_id else None,
        balance_cents=opening_balance_cents,
        opening_balance_cents=opening_balance_cents,
    )

    db.session.add(user)
    db.session.commit()
    return user


def set_employee_id(user_id: int, employee_id: str) -> User:
    """Assign or rotate an employee's verification id (admin only)."""
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user:
        raise ValueError("User not found")
    if user.role != ROLE_EMPLOYEE:
        raise ValueError("Employee IDs can only be set for employees")

    user.employee_id_hash = hash_employee_id(employee_id)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """
    Authenticate user with username (or email) and password.

    Returns User if credentials valid, None otherwise.
    Updates last_login_at timestamp on successful authentication.
    """
    user = db.session.query(User).filter(
        db.or_(User.username == username, User.email == username),
        User.is_active.is_(True),
    ).first()

    if not user:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None
