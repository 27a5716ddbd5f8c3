# Overview: Principal (request identity) and role constants shared by every service.

"""
Identity & Role Model

WHY: Every gate decision starts from "who is asking". The Principal is an
immutable snapshot built once per request from the user row and the session
claims, so call sites never re-derive trust from raw strings.

ROLES:
- admin: back-office administrator (full trust)
- employee: staff account; sensitive actions require employee-id re-verification
- retailer: reseller storefront with its own wallet
- customer: end customer (portal only)

The verification exemption is a claim computed at login time
(see compute_verification_exemption) and carried on the session.
"""

from __future__ import annotations

from dataclasses import dataclass


ROLE_ADMIN = "admin"
ROLE_EMPLOYEE = "employee"
ROLE_RETAILER = "retailer"
ROLE_CUSTOMER = "customer"

VALID_ROLES = (ROLE_ADMIN, ROLE_EMPLOYEE, ROLE_RETAILER, ROLE_CUSTOMER)

# Main back-office account; treated as an admin-level employee when it logs in as one
ADMIN_USERNAME = "admin"
EMPLOYEE_ROLE_ADMIN = "admin"


def compute_verification_exemption(role: str, username: str, employee_role: str | None) -> bool:
    """
    Decide once, at authentication time, whether this principal skips
    employee-id re-verification.

    Only employees are ever subject to re-verification, so every other role
    is reported as exempt. Administrative employees (the main "admin"
    account or employee_role "admin") are fully trusted.
    """
    if role != ROLE_EMPLOYEE:
        return True
    return username == ADMIN_USERNAME or employee_role == EMPLOYEE_ROLE_ADMIN


@dataclass(frozen=True)
class Principal:
    """Immutable identity of the caller for the duration of one request."""
    id: int
    username: str
    role: str
    employee_role: str | None
    is_exempt_from_verification: bool

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_employee(self) -> bool:
        return self.role == ROLE_EMPLOYEE

    def can_act_for(self, user_id: int) -> bool:
        """Admins and employees act on behalf of any account; others only for themselves."""
        return self.role in (ROLE_ADMIN, ROLE_EMPLOYEE) or self.id == user_id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role,
            "employee_role": self.employee_role,
            "is_exempt_from_verification": self.is_exempt_from_verification,
        }
