# Overview: Service-layer operations for the guarded-operation gate and verification session.

"""
Guarded Operation Gate

WHY: Employees share storefront terminals. Before a sensitive action runs,
the employee re-enters their employee id so the action is attributable to
the person at the keyboard, not just to whoever logged in.

DECISION (require_verification):
1. Non-employees execute immediately (ordinary login is their gate)
2. Admin-level employees execute immediately (verification_exempt claim)
3. Sessions already verified (within VERIFICATION_TTL_SECONDS) execute immediately
4. Otherwise the command is parked in the session's single pending slot and
   a verification prompt is returned

RESUMPTION (on_verified):
- The employee id is checked first; on failure nothing runs and the command
  stays parked for a retry or an explicit cancel
- On success the pending command is claimed with a PENDING -> EXECUTING
  compare-and-set, so exactly one caller runs it, then it is removed

SINGLE SLOT: a new guarded call replaces a PENDING command. An EXECUTING
command can be neither replaced nor cancelled, unless its claim is older
than PENDING_ACTION_STALE_SECONDS (the worker died mid-run). A stale command
is dropped or overwritten, never re-run.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..identity import ROLE_EMPLOYEE
from ..models import PendingAction, SessionToken
from .. import operations
from . import auth_service, login_throttle_service, permission_service
from .auth_service import EmployeeIdError
from .concurrency import compare_and_set, lock_for_update
from .session_service import SessionContext
from nexpos.time_utils import utcnow, to_utc_z


PENDING = "PENDING"
EXECUTING = "EXECUTING"


class VerificationError(Exception):
    """Base class for gate errors."""
    pass


class VerificationFailedError(VerificationError):
    """Bad employee id. User-correctable; the command stays parked."""
    pass


class VerificationLockedError(VerificationError):
    """Too many failed verifications; retry after seconds_remaining."""

    def __init__(self, message: str, seconds_remaining: int | None):
        super().__init__(message)
        self.seconds_remaining = seconds_remaining


class VerificationNotRequiredError(VerificationError):
    """Only employees verify an employee id."""
    pass


class PendingActionConflictError(VerificationError):
    """The pending slot holds a command that is already executing."""
    pass


@dataclass
class GateDecision:
    executed: bool
    operation_type: str
    operation_details: str | None = None
    result: dict | None = None

    def to_dict(self) -> dict:
        if self.executed:
            return {
                "executed": True,
                "verification_required": False,
                "operation_type": self.operation_type,
                "result": self.result,
            }
        return {
            "executed": False,
            "verification_required": True,
            "operation_type": self.operation_type,
            "operation_details": self.operation_details,
        }


@dataclass
class VerificationOutcome:
    verified_employee_id: str
    resumed: dict | None = field(default=None)

    def to_dict(self) -> dict:
        return {
            "verified": True,
            "message": "Employee ID verified successfully",
            "resumed": self.resumed,
        }


def _verification_ttl() -> timedelta | None:
    seconds = int(current_app.config.get("VERIFICATION_TTL_SECONDS", 0) or 0)
    if seconds <= 0:
        return None
    return timedelta(seconds=seconds)


def verification_expires_at(session: SessionToken):
    ttl = _verification_ttl()
    if session.verified_at is None or ttl is None:
        return None
    return session.verified_at + ttl


def is_verified(session: SessionToken) -> bool:
    """True while the session holds a verification that has not expired."""
    if not session.verified_employee_id:
        return False
    expires_at = verification_expires_at(session)
    return expires_at is None or utcnow() < expires_at


def requires_verification(context: SessionContext) -> bool:
    principal = context.principal
    if principal.role != ROLE_EMPLOYEE:
        return False
    if principal.is_exempt_from_verification:
        return False
    return not is_verified(context.session)


def get_pending_action(session_id: int) -> PendingAction | None:
    return db.session.query(PendingAction).filter_by(session_id=session_id).first()


def _execute(context: SessionContext, operation_type: str, payload: dict) -> dict:
    result = operations.dispatch(
        operation_type,
        context.principal,
        payload,
        context.session.verified_employee_id,
    )
    return {"operation_type": operation_type, **result}


def _is_stale(pending: PendingAction) -> bool:
    if pending.status != EXECUTING:
        return False
    claimed_at = pending.claimed_at or pending.created_at
    limit = timedelta(seconds=current_app.config.get("PENDING_ACTION_STALE_SECONDS", 300))
    return claimed_at is not None and utcnow() - claimed_at > limit


def _warn_stale(pending: PendingAction) -> None:
    current_app.logger.warning(
        "Dropping stale %s claim on pending %s (session %s, claimed %s)",
        pending.operation_type, pending.id, pending.session_id, to_utc_z(pending.claimed_at),
    )


def _park(context: SessionContext, operation_type: str, operation_details: str | None, payload: dict) -> None:
    session_id = context.session.id
    pending = lock_for_update(db.session.query(PendingAction).filter_by(session_id=session_id)).first()

    if pending and pending.status == EXECUTING:
        if not _is_stale(pending):
            raise PendingActionConflictError("Another operation is already executing for this session")
        _warn_stale(pending)

    if pending is None:
        pending = PendingAction(session_id=session_id, user_id=context.principal.id)
        db.session.add(pending)

    pending.operation_type = operation_type
    pending.operation_details = operation_details
    pending.payload = json.dumps(payload)
    pending.status = PENDING
    pending.created_at = utcnow()
    pending.claimed_at = None

    try:
        db.session.commit()
    except IntegrityError:
        # Two guarded calls raced to create the slot in the same session
        db.session.rollback()
        raise PendingActionConflictError("Another operation is awaiting verification for this session")


def require_verification(
    context: SessionContext,
    operation_type: str,
    payload: dict,
    operation_details: str | None = None,
) -> GateDecision:
    """
    Run a guarded operation now, or park it until the employee verifies.

    Raises operations.UnknownOperationError for operation types outside the catalog.
    Errors raised by an immediately executed operation propagate unchanged.
    """
    operations.validate_operation_type(operation_type)

    if not requires_verification(context):
        result = _execute(context, operation_type, payload)
        return GateDecision(
            executed=True,
            operation_type=operation_type,
            operation_details=operation_details,
            result=result,
        )

    _park(context, operation_type, operation_details, payload)
    return GateDecision(
        executed=False,
        operation_type=operation_type,
        operation_details=operation_details,
    )


def _claim_pending(session_id: int) -> PendingAction | None:
    pending = get_pending_action(session_id)
    if pending is None or pending.status != PENDING:
        return None
    if not compare_and_set(
        PendingAction, pending.id, "status", PENDING, {"status": EXECUTING, "claimed_at": utcnow()}
    ):
        db.session.rollback()
        return None
    db.session.commit()
    db.session.refresh(pending)
    return pending


def _discard(pending_id: int, claimed_at) -> None:
    # Only our own claim; a stale slot may have been re-parked meanwhile
    db.session.query(PendingAction).filter_by(
        id=pending_id, status=EXECUTING, claimed_at=claimed_at
    ).delete(synchronize_session=False)
    db.session.commit()


def on_verified(
    context: SessionContext,
    employee_id: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> VerificationOutcome:
    """
    Verify the employee id, mark the session verified, and resume the
    parked command exactly once.

    Raises:
        VerificationNotRequiredError: caller is not an employee
        VerificationLockedError: too many recent failures
        VerificationFailedError: id rejected by the employee directory
    Errors raised by the resumed operation propagate after the command is
    removed from the slot (it ran once; it is not retried).
    """
    principal = context.principal
    session = context.session

    if principal.role != ROLE_EMPLOYEE:
        raise VerificationNotRequiredError("Employee verification not required for your role")

    pending = get_pending_action(session.id)
    operation_type = pending.operation_type if pending else None

    locked, seconds_remaining = login_throttle_service.is_verification_locked(principal.id)
    if locked:
        raise VerificationLockedError(
            "Employee verification temporarily locked due to too many failed attempts",
            seconds_remaining,
        )

    try:
        normalized = auth_service.verify_employee_id(employee_id, principal)
    except EmployeeIdError as exc:
        login_throttle_service.record_failed_verification(
            user_id=principal.id,
            operation_type=operation_type,
            reason=str(exc),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise VerificationFailedError(str(exc))

    session.verified_employee_id = normalized
    session.verified_at = utcnow()
    db.session.commit()

    login_throttle_service.record_successful_verification(
        user_id=principal.id,
        operation_type=operation_type,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    claimed = _claim_pending(session.id)
    if claimed is None:
        return VerificationOutcome(verified_employee_id=normalized)

    payload = json.loads(claimed.payload or "{}")
    claimed_id = claimed.id
    claimed_at = claimed.claimed_at
    resumed = {
        "operation_type": claimed.operation_type,
        "operation_details": claimed.operation_details,
    }

    try:
        resumed["result"] = _execute(context, claimed.operation_type, payload)
    except Exception:
        db.session.rollback()
        _discard(claimed_id, claimed_at)
        raise

    _discard(claimed_id, claimed_at)
    return VerificationOutcome(verified_employee_id=normalized, resumed=resumed)


def on_cancelled(
    context: SessionContext,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> bool:
    """
    Drop the parked command without running it.

    Returns True if a command was cancelled, False if the slot was empty.
    Raises PendingActionConflictError if the command is already executing.
    """
    pending = get_pending_action(context.session.id)
    if pending is None:
        return False
    stale = _is_stale(pending)
    if pending.status == EXECUTING and not stale:
        raise PendingActionConflictError("Operation is already executing and cannot be cancelled")
    if stale:
        _warn_stale(pending)

    operation_type = pending.operation_type
    deleted = db.session.query(PendingAction).filter_by(
        id=pending.id, status=pending.status
    ).delete(synchronize_session=False)

    if deleted != 1:
        db.session.rollback()
        raise PendingActionConflictError("Operation is already executing and cannot be cancelled")

    permission_service.log_security_event(
        user_id=context.principal.id,
        event_type="GUARDED_OPERATION_CANCELLED",
        success=True,
        resource=operation_type,
        action="cancel",
        ip_address=ip_address,
        user_agent=user_agent,
        commit=False,
    )
    db.session.commit()
    return True


def reset_verification(context: SessionContext) -> None:
    """Forget the session's verification; the next guarded call prompts again."""
    context.session.verified_employee_id = None
    context.session.verified_at = None
    db.session.commit()


def get_verification_state(context: SessionContext) -> dict:
    session = context.session
    pending = get_pending_action(session.id)
    verified = is_verified(session)
    return {
        "is_employee": context.principal.role == ROLE_EMPLOYEE,
        "exempt": context.principal.is_exempt_from_verification,
        "verification_required": requires_verification(context),
        "verified": verified,
        "verified_at": to_utc_z(session.verified_at) if verified and session.verified_at else None,
        "expires_at": to_utc_z(verification_expires_at(session)) if verified else None,
        "pending_action": pending.to_dict() if pending else None,
    }
