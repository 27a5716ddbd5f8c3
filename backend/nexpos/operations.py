# Overview: Guarded operation catalog and the resumption handlers that execute them.
# Each operation is defined as: (code, name, description)

"""
Guarded Operations

WHY: Sensitive actions (moving money, activating service, swapping a SIM)
may need a fresh employee-id verification before they run. The gate parks
them as command values {operation_type, operation_details, payload}; the
handlers below are the only code that turns a command back into an effect.

Carrier-facing operations are executed by external carrier integrations.
Their handler returns an authorization receipt that the caller forwards to
that integration; only fund_transfer is executed in-process.
"""

from __future__ import annotations

from typing import Callable

from .identity import Principal
from nexpos.time_utils import to_utc_z, utcnow


FUND_TRANSFER = "fund_transfer"

GUARDED_OPERATIONS = [
    (
        FUND_TRANSFER,
        "Wallet Funding",
        "Add funds to a wallet through the payment gateway",
    ),
    (
        "nexitel_activation",
        "Nexitel Activation",
        "Activate a Nexitel line",
    ),
    (
        "sim_swap",
        "SIM Swap",
        "Move a line to a new SIM/ICCID",
    ),
    (
        "port_in",
        "Port-In",
        "Port a number in from another carrier",
    ),
    (
        "international_recharge",
        "International Recharge",
        "Recharge an international mobile number",
    ),
    (
        "usa_recharge",
        "USA Recharge",
        "Recharge a USA carrier line",
    ),
    (
        "wifi_calling_activation",
        "WiFi Calling Activation",
        "Enable WiFi calling on a line",
    ),
    (
        "bulk_wifi_calling_activation",
        "Bulk WiFi Calling Activation",
        "Enable WiFi calling on a batch of lines",
    ),
    (
        "voip_activation",
        "VoIP Activation",
        "Activate a VoIP service",
    ),
]

OPERATION_CODES = {code for code, _, _ in GUARDED_OPERATIONS}

Handler = Callable[[Principal, dict, "str | None"], dict]

_HANDLERS: dict[str, Handler] = {}


class UnknownOperationError(ValueError):
    """Raised for operation types that are not in the catalog."""


def validate_operation_type(operation_type: str) -> None:
    if operation_type not in OPERATION_CODES:
        raise UnknownOperationError(f"Unknown operation type: {operation_type}")


def get_operation_definition(operation_type: str) -> dict:
    for code, name, description in GUARDED_OPERATIONS:
        if code == operation_type:
            return {"code": code, "name": name, "description": description}
    raise UnknownOperationError(f"Unknown operation type: {operation_type}")


def register_handler(operation_type: str):
    """Decorator: register the resumption handler for an operation type."""
    validate_operation_type(operation_type)

    def decorator(func: Handler) -> Handler:
        _HANDLERS[operation_type] = func
        return func
    return decorator


def dispatch(operation_type: str, principal: Principal, payload: dict, verified_employee_id: str | None) -> dict:
    """Execute a guarded operation. Called by the gate (directly or on resume)."""
    validate_operation_type(operation_type)
    handler = _HANDLERS.get(operation_type, _authorization_receipt)
    return handler(principal, payload, verified_employee_id)


@register_handler(FUND_TRANSFER)
def _fund_transfer(principal: Principal, payload: dict, verified_employee_id: str | None) -> dict:
    from .services import payment_service

    client_secret, txn = payment_service.create_intent(
        user_id=payload["user_id"],
        amount_cents=payload["amount_cents"],
        payment_method=payload["payment_method"],
        initiated_by=principal,
    )
    return {
        "client_secret": client_secret,
        "transaction_id": txn.id,
        "transaction": txn.to_dict(),
    }


def _authorization_receipt(principal: Principal, payload: dict, verified_employee_id: str | None) -> dict:
    return {
        "authorized": True,
        "authorized_user_id": principal.id,
        "verified_employee_id": verified_employee_id,
        "payload": payload,
        "authorized_at": to_utc_z(utcnow()),
    }
