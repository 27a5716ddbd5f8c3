# Overview: Service-layer operations for role checks and security event logging.

"""
Role Checking and Security Event Logging

WHY: Enforce the small, fixed role policy of the wallet and keep an audit
trail of every security-relevant decision.

DESIGN PRINCIPLES:
- Fail closed: deny unless the principal's role is explicitly allowed
- Log denials and alarms, not routine grants
- Policy is limited to the roles in nexpos.identity (not a generic RBAC engine)
"""

from ..extensions import db
from ..identity import Principal, VALID_ROLES
from ..models import SecurityEvent
from nexpos.time_utils import utcnow


class PermissionDeniedError(Exception):
    """Raised when the principal's role is not allowed to perform an action."""
    pass


def log_security_event(
    user_id: int | None,
    event_type: str,
    success: bool,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    commit: bool = True,
) -> SecurityEvent:
    """
    Log security event to audit trail.

    WHY: Immutable audit log for compliance and operator follow-up.

    event_type examples:
    - ROLE_DENIED
    - LOGIN_FAILED / LOGIN_SUCCESS
    - EMPLOYEE_VERIFICATION_FAILED / EMPLOYEE_VERIFIED
    - GUARDED_OPERATION_CANCELLED
    - PAYMENT_INTEGRITY_ALARM
    - WEBHOOK_SIGNATURE_INVALID

    commit=False lets callers write the event inside their own transaction.
    """
    event = SecurityEvent(
        user_id=user_id,
        event_type=event_type,
        resource=resource,
        action=action,
        success=success,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow()
    )

    db.session.add(event)
    if commit:
        db.session.commit()
    else:
        db.session.flush()

    return event


def require_role(
    principal: Principal,
    allowed_roles: tuple[str, ...],
    resource: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    """
    Require the principal to hold one of allowed_roles.

    Raises PermissionDeniedError (and logs ROLE_DENIED) otherwise.
    """
    unknown = [r for r in allowed_roles if r not in VALID_ROLES]
    if unknown:
        raise ValueError(f"Unknown roles: {', '.join(unknown)}")

    if principal.role in allowed_roles:
        return

    log_security_event(
        user_id=principal.id,
        event_type="ROLE_DENIED",
        success=False,
        resource=resource,
        action=f"ANY_OF:{','.join(allowed_roles)}",
        reason=f"Role {principal.role} not in {', '.join(allowed_roles)}",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    raise PermissionDeniedError(f"Requires role: {', '.join(allowed_roles)}")


def require_self_or_admin(principal: Principal, user_id: int) -> None:
    """Wallet reads: an account sees its own data; admins see everyone's."""
    if principal.is_admin or principal.id == user_id:
        return
    raise PermissionDeniedError("Access denied")


def get_security_events(
    *,
    user_id: int | None = None,
    event_type: str | None = None,
    limit: int = 100,
) -> list[SecurityEvent]:
    query = db.session.query(SecurityEvent)
    if user_id is not None:
        query = query.filter(SecurityEvent.user_id == user_id)
    if event_type:
        query = query.filter(SecurityEvent.event_type == event_type)
    return query.order_by(SecurityEvent.occurred_at.desc(), SecurityEvent.id.desc()).limit(limit).all()
