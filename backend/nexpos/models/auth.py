from __future__ import annotations

from ..extensions import db
from nexpos.time_utils import to_utc_z


class User(db.Model):
    """
    User accounts for authentication, attribution, and the wallet balance.

    WHY: Every action must be attributable. No shared logins.

    WALLET: balance_cents is a cached running sum kept consistent with
    wallet_ledger_entries under the same row lock as each append.
    opening_balance_cents is the balance the account started with, so
    sum(ledger entries) == balance_cents - opening_balance_cents always holds.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_role_active", "role", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(64), nullable=False, unique=True, index=True)
    email = db.Column(db.String(255), nullable=False, unique=True)

    # Bcrypt hashed password
    password_hash = db.Column(db.String(255), nullable=False)

    # admin, employee, retailer, customer
    role = db.Column(db.String(16), nullable=False, index=True)

    # Employee sub-role ("accountant", "technical_support", "admin", ...)
    employee_role = db.Column(db.String(64), nullable=True)

    # Employee identifier used for re-verification (bcrypt hashed, never stored plaintext)
    employee_id_hash = db.Column(db.String(255), nullable=True)

    balance_cents = db.Column(db.Integer, nullable=False, default=0)
    opening_balance_cents = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def has_employee_id(self) -> bool:
        return bool(self.employee_id_hash)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "employee_role": self.employee_role,
            "has_employee_id": self.has_employee_id,
            "balance_cents": self.balance_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at) if self.last_login_at else None,
        }


class SessionToken(db.Model):
    """
    Secure session token management; also holds the verification session.

    WHY: Stateless auth tokens with timeout and revocation support.
    Tokens are cryptographically secure random strings (32 bytes = 64 hex chars).

    VERIFICATION SESSION:
    - verification_exempt: claim computed once at login (admin-level employees
      and non-employees are exempt from employee-id re-verification)
    - verified_employee_id / verified_at: last successful re-verification in
      this session; cleared on logout or revocation

    SECURITY NOTES:
    - Tokens stored hashed in database (SHA-256)
    - 24-hour absolute timeout
    - 2-hour idle timeout
    - Revocable on logout or suspicious activity
    """
    __tablename__ = "session_tokens"
    __table_args__ = (
        db.Index("ix_session_tokens_user_active", "user_id", "is_revoked"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Token hash (never store plaintext tokens!)
    token_hash = db.Column(db.String(255), nullable=False, unique=True, index=True)

    # Claims captured at creation time
    verification_exempt = db.Column(db.Boolean, nullable=False, default=False)

    # Verification session state
    verified_employee_id = db.Column(db.String(64), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Session metadata
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    # Revocation support
    is_revoked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    # Client information (for security monitoring)
    user_agent = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)  # IPv6 max length

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "verification_exempt": self.verification_exempt,
            "verified": self.verified_employee_id is not None,
            "verified_at": to_utc_z(self.verified_at) if self.verified_at else None,
            "created_at": to_utc_z(self.created_at),
            "last_used_at": to_utc_z(self.last_used_at),
            "expires_at": to_utc_z(self.expires_at),
            "is_revoked": self.is_revoked,
        }


class PendingAction(db.Model):
    """
    Single-slot queue of the guarded operation awaiting employee verification.

    WHY: The parked operation is an explicit command value
    (operation_type, operation_details, payload) instead of a captured
    callback, so it can be inspected, cancelled, and resumed by a dedicated
    handler.

    SINGLE SLOT: session_id is unique. A new guarded call replaces a PENDING
    command; an EXECUTING command cannot be replaced or cancelled until it
    has been claimed for longer than PENDING_ACTION_STALE_SECONDS.
    """
    __tablename__ = "pending_actions"
    __table_args__ = (
        db.UniqueConstraint("session_id", name="uq_pending_actions_session"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("session_tokens.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    operation_type = db.Column(db.String(64), nullable=False)
    operation_details = db.Column(db.String(255), nullable=True)
    payload = db.Column(db.Text, nullable=False, default="{}")  # JSON

    status = db.Column(db.String(16), nullable=False, default="PENDING")  # PENDING, EXECUTING
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    session = db.relationship("SessionToken", backref=db.backref("pending_action", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation_type": self.operation_type,
            "operation_details": self.operation_details,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }
