# Overview: Flask CLI command groups for bootstrap, order operations, and maintenance.

# backend/giftflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use Alembic migrations in production).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Marketplace credentials:
# - python -m flask marketplace add-account --name primary --api-key KEY --default
#   Register a marketplace account used for purchase-on-behalf orders.
# - python -m flask marketplace add-payment-method --name-on-card "Gift Orders" --card-token tok_123 --exp-month 12 --exp-year 2030 --default
#   Register the business card the marketplace is paid with.
# - python -m flask marketplace list
#   List accounts and payment methods (secrets are never printed).
#
# Order operations:
# - python -m flask orders verify-session cs_123
#   Verify a checkout session and run schedule/submit, like the storefront redirect.
# - python -m flask orders submit <order-id> [--test-mode] [--debug]
#   Submit one order to the marketplace.
# - python -m flask orders stuck [--lookback-days 7] [--limit 20]
#   List paid orders that never reached the marketplace.
# - python -m flask orders recover [--order-id <id>]
#   Resubmit one stuck order, or every candidate when --order-id is omitted.
# - python -m flask orders release-scheduled
#   Submit scheduled orders whose processing date has arrived (run daily).
# - python -m flask orders reconcile-payments [--lookback-hours 24]
#   Re-check pending orders against the payment provider (run hourly).
#
# Maintenance:
# - python -m flask maintenance cleanup-security-events --retention-days 90
#   Delete security events older than the retention window.
# - python -m flask maintenance cleanup-fingerprints --retention-days 30
#   Delete duplicate-detection fingerprints older than the retention window.

import json

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import BusinessPaymentMethod, MarketplaceAccount
from .services import fulfillment_service
from .services import maintenance_service
from .services import order_flow_service
from .services import reconciliation_service
from .services import recovery_service
from .services.fulfillment_service import (
    FulfillmentError,
    TRIGGER_CLI,
    TRIGGER_MANUAL_RECOVERY,
    TRIGGER_WEBHOOK_RECOVERY,
)
from .services.payment_verification_service import PaymentVerificationError
from .services.recovery_service import RecoveryError


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables. Existing tables are left untouched."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask marketplace add-account' next.")


# =============================================================================
# MARKETPLACE CREDENTIALS
# =============================================================================

@click.group('marketplace')
def marketplace_group():
    """Marketplace account and payment method management."""


def _clear_defaults(model) -> None:
    db.session.query(model).filter(model.is_default.is_(True)).update(
        {model.is_default: False}, synchronize_session=False
    )


@marketplace_group.command('add-account')
@click.option('--name', 'account_name', required=True, help='Unique account name')
@click.option('--api-key', required=True, help='Marketplace API key')
@click.option('--retailer', default='amazon', show_default=True)
@click.option('--retailer-email', default=None)
@click.option('--retailer-password', default=None)
@click.option('--default', 'make_default', is_flag=True, help='Use this account for submissions')
@with_appcontext
def add_account(account_name, api_key, retailer, retailer_email, retailer_password, make_default):
    """Register a marketplace account."""
    existing = db.session.query(MarketplaceAccount).filter_by(account_name=account_name).first()
    if existing:
        click.echo(f"FAIL Account '{account_name}' already exists (ID: {existing.id})")
        return

    if make_default:
        _clear_defaults(MarketplaceAccount)

    account = MarketplaceAccount(
        account_name=account_name,
        api_key=api_key,
        retailer=retailer,
        retailer_email=retailer_email,
        retailer_password=retailer_password,
        is_default=make_default,
    )
    db.session.add(account)
    db.session.commit()
    click.echo(f"PASS Created marketplace account: {account.account_name} (ID: {account.id})")


@marketplace_group.command('add-payment-method')
@click.option('--name-on-card', required=True)
@click.option('--card-token', default=None, help='Vault reference for the card')
@click.option('--last-four', default=None)
@click.option('--exp-month', type=int, default=None)
@click.option('--exp-year', type=int, default=None)
@click.option('--default', 'make_default', is_flag=True, help='Use this card for submissions')
@with_appcontext
def add_payment_method(name_on_card, card_token, last_four, exp_month, exp_year, make_default):
    """Register a business payment method."""
    if make_default:
        _clear_defaults(BusinessPaymentMethod)

    method = BusinessPaymentMethod(
        name_on_card=name_on_card,
        card_token=card_token,
        last_four=last_four,
        expiration_month=exp_month,
        expiration_year=exp_year,
        is_default=make_default,
    )
    db.session.add(method)
    db.session.commit()

    click.echo(f"PASS Created payment method ID {method.id} ({name_on_card})")
    if not method.is_complete():
        click.echo("WARN Card token or expiry missing; submissions will use cardholder-name-only mode.")


@marketplace_group.command('list')
@with_appcontext
def list_marketplace():
    """List marketplace accounts and payment methods."""
    accounts = db.session.query(MarketplaceAccount).order_by(MarketplaceAccount.id).all()
    methods = db.session.query(BusinessPaymentMethod).order_by(BusinessPaymentMethod.id).all()

    click.echo("\n" + "="*70)
    click.echo(f"{'ID':<5} {'Account':<30} {'Retailer':<12} {'Status':<10} {'Default'}")
    click.echo("="*70)
    for a in accounts:
        click.echo(f"{a.id:<5} {a.account_name:<30} {a.retailer:<12} {a.account_status:<10} {'Yes' if a.is_default else 'No'}")

    click.echo("\n" + "="*70)
    click.echo(f"{'ID':<5} {'Name on card':<30} {'Last 4':<8} {'Complete':<10} {'Default'}")
    click.echo("="*70)
    for m in methods:
        complete = "Yes" if m.is_complete() else "No"
        click.echo(f"{m.id:<5} {m.name_on_card:<30} {m.last_four or '-':<8} {complete:<10} {'Yes' if m.is_default else 'No'}")
    click.echo("="*70 + "\n")


# =============================================================================
# ORDER OPERATIONS
# =============================================================================

@click.group('orders')
def orders_group():
    """Order verification, submission and recovery."""


@orders_group.command('verify-session')
@click.argument('session_id')
@with_appcontext
def verify_session_cli(session_id):
    """Verify a checkout session and hand the order on."""
    try:
        result = order_flow_service.process_paid_session(session_id)
    except PaymentVerificationError as e:
        click.echo(f"FAIL {type(e).__name__}: {e}")
        return
    _echo_json(result)


@orders_group.command('submit')
@click.argument('order_id')
@click.option('--test-mode', is_flag=True, help='Ask the marketplace not to place a real order')
@click.option('--debug', 'debug_mode', is_flag=True, help='Print the redacted request')
@with_appcontext
def submit_cli(order_id, test_mode, debug_mode):
    """Submit one order to the marketplace."""
    try:
        result = fulfillment_service.submit_order(
            order_id,
            trigger_source=TRIGGER_CLI,
            is_test_mode=test_mode,
            debug_mode=debug_mode,
        )
    except FulfillmentError as e:
        click.echo(f"FAIL {type(e).__name__}: {e}")
        return

    if result.blocked:
        click.echo(f"WARN Blocked: {'; '.join(result.reasons)}")
    elif result.already_submitted:
        click.echo(f"PASS Already submitted: {result.marketplace_order_id}")
    else:
        click.echo(f"PASS Submitted: {result.marketplace_order_id}")
    if debug_mode:
        _echo_json(result.to_dict())


@orders_group.command('stuck')
@click.option('--lookback-days', type=int, default=None)
@click.option('--limit', type=int, default=None)
@with_appcontext
def list_stuck_cli(lookback_days, limit):
    """List paid orders that never reached the marketplace."""
    orders = recovery_service.list_stuck_orders(lookback_days=lookback_days, limit=limit)
    if not orders:
        click.echo("No stuck orders found.")
        return

    click.echo("\n" + "="*96)
    click.echo(f"{'Order':<24} {'Status':<12} {'Marketplace':<20} {'Total':>10} {'Tries':>6} {'Age(h)':>8}  Customer")
    click.echo("="*96)
    for o in orders:
        click.echo(
            f"{o['order_number']:<24} {o['status']:<12} {o['marketplace_status'] or '-':<20} "
            f"{o['total_amount']:>10} {o['submission_attempts']:>6} {o['age_hours'] or 0:>8}  {o['customer'] or '-'}"
        )
    click.echo("="*96 + "\n")


@orders_group.command('recover')
@click.option('--order-id', default=None, help='Recover a single order')
@with_appcontext
def recover_cli(order_id):
    """Resubmit stuck orders through the normal submitter."""
    if order_id:
        try:
            result = recovery_service.recover_order(order_id, trigger_source=TRIGGER_MANUAL_RECOVERY)
        except RecoveryError as e:
            click.echo(f"FAIL {e}")
            return
        _echo_json(result)
        return

    summary = recovery_service.recover_stuck_orders(trigger_source=TRIGGER_WEBHOOK_RECOVERY)
    click.echo(
        f"Candidates: {summary['candidates']}  Recovered: {summary['recovered']}  "
        f"Already submitted: {summary['already_submitted']}  Blocked: {summary['blocked']}  "
        f"Failed: {summary['failed']}"
    )


@orders_group.command('release-scheduled')
@click.option('--limit', type=int, default=None)
@with_appcontext
def release_scheduled_cli(limit):
    """Submit scheduled orders whose processing date has arrived."""
    summary = order_flow_service.release_scheduled_orders(limit=limit)
    click.echo(
        f"Checked: {summary['checked']}  Released: {summary['released']}  "
        f"Submitted: {summary['submitted']}  Failed: {summary['failed']}  "
        f"Still scheduled: {summary['still_scheduled']}"
    )


@orders_group.command('reconcile-payments')
@click.option('--lookback-hours', type=int, default=None)
@click.option('--limit', type=int, default=None)
@with_appcontext
def reconcile_payments_cli(lookback_hours, limit):
    """Re-check pending orders against the payment provider."""
    summary = reconciliation_service.reconcile_pending_payments(lookback_hours=lookback_hours, limit=limit)
    click.echo(
        f"Checked: {summary['checked']}  Corrected: {summary['corrected']}  "
        f"Discrepancies: {summary['discrepancies']}  Errors: {summary['errors']}"
    )


# =============================================================================
# MAINTENANCE
# =============================================================================

@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    """
    Cleanup old security events.

    Default retention: 90 days.
    """
    deleted = maintenance_service.cleanup_security_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


@maintenance_group.command('cleanup-fingerprints')
@click.option('--retention-days', type=int, default=30, show_default=True)
@with_appcontext
def cleanup_fingerprints_cli(retention_days):
    """Cleanup old duplicate-detection fingerprints."""
    deleted = maintenance_service.cleanup_submission_fingerprints(retention_days=retention_days)
    click.echo(f"Deleted {deleted} submission fingerprints older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(marketplace_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(maintenance_group)
