# Overview: Flask CLI command groups for bootstrap, wallet operations, and maintenance.

# backend/nexpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init
#   Idempotent bootstrap: creates tables and the default admin user.
#
# Users:
# - python -m flask users list
#   List all users with roles and active status.
# - python -m flask users create --username emp7 --email emp7@nexpos.local --password "Password123!" --role employee --employee-id EMP-7
#   Create a user (prompts if options are omitted).
# - python -m flask users set-employee-id emp7 EMP-7
#   Assign or rotate an employee's verification id.
#
# Wallet:
# - python -m flask wallet grant-funding retailer1 --daily 10000 --monthly 100000
#   Enable wallet funding for a user with optional caps (cents).
# - python -m flask wallet reconcile --older-than-minutes 30 --abandon-after-hours 24
#   Settle funding transactions the client never confirmed.
# - python -m flask wallet verify-ledger [--user retailer1]
#   Check sum(ledger entries) == balance - opening balance.
#
# Maintenance:
# - python -m flask maintenance cleanup-sessions --retention-days 30
#   Delete expired/revoked sessions older than the retention window.
# - python -m flask maintenance cleanup-security-events --retention-days 90
#   Delete security events older than the retention window.
# - python -m flask maintenance cleanup-webhook-events --retention-days 30
#   Forget processed gateway webhook ids older than the retention window.

import click
from datetime import timedelta
from flask.cli import with_appcontext

from .extensions import db
from .identity import VALID_ROLES, ROLE_ADMIN
from .models import User
from .services.auth_service import create_user, set_employee_id, PasswordValidationError
from .services import funding_policy_service
from .services import maintenance_service
from .services import payment_service
from .services import session_service
from .services import wallet_ledger_service
from .validation import ValidationError


def _get_user(identifier: str) -> User | None:
    return db.session.query(User).filter(
        db.or_(User.username == identifier, User.email == identifier)
    ).first()


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@click.option('--admin-password', default='Password123!', help='Password for the default admin user')
@with_appcontext
def init_system(admin_password):
    """
    Initialize the NexPOS wallet service: tables and the default admin.

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing NexPOS...")

    db.create_all()
    click.echo("PASS Database tables ready")

    existing = _get_user("admin")
    if existing:
        click.echo("WARN  User 'admin' already exists, skipping...")
    else:
        try:
            create_user(
                username="admin",
                email="admin@nexpos.local",
                password=admin_password,
                role=ROLE_ADMIN,
            )
            click.echo("PASS Created user: admin (admin@nexpos.local) with role 'admin'")
        except PasswordValidationError as e:
            click.echo(f"FAIL Password validation failed for 'admin': {str(e)}")
            return

    click.echo("\n" + "="*60)
    click.echo("DONE NexPOS Initialized Successfully!")
    click.echo("="*60)
    click.echo("\nSECURITY WARNING: change the admin password in production!")
    click.echo("")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('list')
@with_appcontext
def list_users_cli():
    """List all users."""
    users = db.session.query(User).order_by(User.id).all()

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Username':<20} {'Role':<10} {'Employee role':<18} {'Emp ID':<7} {'Balance':>12} {'Active':<6}")
    click.echo("="*90)
    for user in users:
        click.echo(
            f"{user.id:<5} {user.username:<20} {user.role:<10} {(user.employee_role or '-'):<18} "
            f"{('yes' if user.has_employee_id else 'no'):<7} {user.balance_cents / 100:>12.2f} "
            f"{('yes' if user.is_active else 'no'):<6}"
        )
    click.echo("="*90 + "\n")


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(list(VALID_ROLES)), prompt=True, help='Role')
@click.option('--employee-role', default=None, help='Employee sub-role (employees only)')
@click.option('--employee-id', default=None, help='Employee verification id (employees only)')
@with_appcontext
def create_user_cli(username, email, password, role, employee_role, employee_id):
    """
    Create a new user.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = create_user(
            username=username,
            email=email,
            password=password,
            role=role,
            employee_role=employee_role,
            employee_id=employee_id,
        )
        click.echo(f"PASS Created user: {username} ({email}) with role '{role}' (ID: {user.id})")
        if role == "employee" and not employee_id:
            click.echo("WARN  No employee id set; guarded operations will fail verification until one is set")

    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        click.echo("Requirements: 8+ chars, uppercase, lowercase, digit, special char")
    except ValueError as e:
        click.echo(f"FAIL {str(e)}")


@users_group.command('set-employee-id')
@click.argument('identifier')
@click.argument('employee_id')
@with_appcontext
def set_employee_id_cli(identifier, employee_id):
    """Assign or rotate the verification id of an employee."""
    user = _get_user(identifier)
    if not user:
        click.echo(f"FAIL User '{identifier}' not found")
        return
    try:
        set_employee_id(user.id, employee_id)
    except ValueError as e:
        click.echo(f"FAIL {str(e)}")
        return
    click.echo(f"PASS Employee id updated for {user.username}")


@click.group('wallet')
def wallet_group():
    """Wallet funding commands."""


@wallet_group.command('grant-funding')
@click.argument('identifier')
@click.option('--daily', 'max_daily_cents', type=int, default=None, help='Daily cap in cents (omit for none)')
@click.option('--monthly', 'max_monthly_cents', type=int, default=None, help='Monthly cap in cents (omit for none)')
@click.option('--revoke', is_flag=True, help='Disable funding instead')
@click.option('--notes', default=None)
@with_appcontext
def grant_funding_cli(identifier, max_daily_cents, max_monthly_cents, revoke, notes):
    """Enable (or with --revoke disable) wallet funding for a user."""
    user = _get_user(identifier)
    if not user:
        click.echo(f"FAIL User '{identifier}' not found")
        return

    payload = {
        "can_add_funds": not revoke,
        "max_daily_cents": max_daily_cents,
        "max_monthly_cents": max_monthly_cents,
    }
    if notes:
        payload["notes"] = notes

    try:
        permission = funding_policy_service.upsert_permission(user.id, payload, actor_user_id=None)
    except ValidationError as e:
        click.echo(f"FAIL {str(e)}")
        return

    state = "enabled" if permission.can_add_funds else "disabled"
    click.echo(
        f"PASS Funding {state} for {user.username} "
        f"(daily: {permission.max_daily_cents or 'no cap'}, monthly: {permission.max_monthly_cents or 'no cap'})"
    )


@wallet_group.command('reconcile')
@click.option('--older-than-minutes', type=int, default=None, help='Only rows older than this (default: config)')
@click.option('--abandon-after-hours', type=int, default=None, help='Fail unpaid intents older than this (default: config)')
@with_appcontext
def reconcile_cli(older_than_minutes, abandon_after_hours):
    """Settle funding transactions whose client never confirmed."""
    summary = payment_service.reconcile_pending_transactions(
        older_than=timedelta(minutes=older_than_minutes) if older_than_minutes is not None else None,
        abandon_after=timedelta(hours=abandon_after_hours) if abandon_after_hours is not None else None,
    )
    click.echo(
        "Reconcile: checked={checked} credited={credited} failed={failed} "
        "abandoned={abandoned} pending={pending} alarms={alarms} errors={errors}".format(**summary)
    )
    if summary["alarms"]:
        click.echo("WARN  Integrity alarms raised; see security events (PAYMENT_INTEGRITY_ALARM)")


@wallet_group.command('verify-ledger')
@click.option('--user', 'identifier', default=None, help='Check one user (default: all)')
@with_appcontext
def verify_ledger_cli(identifier):
    """Check the ledger invariant for one or all users."""
    if identifier:
        user = _get_user(identifier)
        if not user:
            click.echo(f"FAIL User '{identifier}' not found")
            return
        users = [user]
    else:
        users = db.session.query(User).order_by(User.id).all()

    bad = 0
    for user in users:
        report = wallet_ledger_service.verify_ledger_consistency(user.id)
        if not report["consistent"]:
            bad += 1
            click.echo(
                f"FAIL {user.username}: balance {report['balance_cents']} != "
                f"expected {report['expected_balance_cents']}"
            )

    if bad:
        raise SystemExit(1)
    click.echo(f"PASS Ledger consistent for {len(users)} users")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-sessions')
@click.option('--retention-days', type=int, default=30, show_default=True)
@with_appcontext
def cleanup_sessions_cli(retention_days):
    """Delete expired or revoked sessions older than the retention window."""
    deleted = session_service.cleanup_expired_sessions(retention_days=retention_days)
    click.echo(f"Deleted {deleted} sessions older than {retention_days} days.")


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    """
    Cleanup old security events.

    Default retention: 90 days. Integrity alarms are kept.
    """
    deleted = maintenance_service.cleanup_security_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


@maintenance_group.command('cleanup-webhook-events')
@click.option('--retention-days', type=int, default=30, show_default=True)
@with_appcontext
def cleanup_webhook_events_cli(retention_days):
    deleted = maintenance_service.cleanup_webhook_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} webhook events older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(wallet_group)
    app.cli.add_command(maintenance_group)
