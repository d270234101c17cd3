# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/commerce_ledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables (idempotent; existing tables are left alone).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Ledger inspection/maintenance:
# - python -m flask ledger sweep-reservations
#   Expire ACTIVE stock reservations whose lease ran out.
# - python -m flask ledger stock 42
#   Show on_hand / reserved / available / debt for a product.
# - python -m flask ledger balance 7
#   Show a customer's store-credit balance.
# - python -m flask ledger fingerprint invoice.json
#   Print the import fingerprint of a parsed invoice (supplier_id,
#   document_number, emission_date, lines).

import json

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import LedgerError
from .services import import_service, inventory_service, store_credit_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    from . import models  # noqa: F401

    db.create_all()
    click.echo("PASS Database schema ready")


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
    click.echo("BUILD Creating all tables...")
    db.create_all()
    click.echo("PASS Database reset complete")


@click.group('ledger')
def ledger_group():
    """Stock and store-credit ledger commands."""


@ledger_group.command('sweep-reservations')
@with_appcontext
def sweep_reservations():
    """Expire stock reservations whose lease ran out."""
    expired = inventory_service.sweep_expired_reservations()
    click.echo(f"PASS Expired {expired} reservation(s)")


@ledger_group.command('stock')
@click.argument('product_id', type=int)
@with_appcontext
def show_stock(product_id):
    """Show the stock position of a product."""
    try:
        summary = inventory_service.get_stock_summary(product_id)
    except LedgerError as e:
        raise click.ClickException(e.message)

    click.echo(f"Product {summary['product_id']} ({summary['sku']})")
    click.echo(f"  on_hand:   {summary['on_hand']}")
    click.echo(f"  reserved:  {summary['reserved']}")
    click.echo(f"  available: {summary['available']}")
    click.echo(f"  debt:      {summary['debt']}")


@ledger_group.command('balance')
@click.argument('customer_id', type=int)
@with_appcontext
def show_balance(customer_id):
    """Show a customer's store-credit balance (folded from the ledger)."""
    try:
        summary = store_credit_service.get_account_summary(customer_id)
    except LedgerError as e:
        raise click.ClickException(e.message)

    click.echo(f"Customer {customer_id}")
    click.echo(f"  balance:  {summary['balance_cents']} cents")
    click.echo(f"  credited: {summary['total_credited_cents']} cents")
    click.echo(f"  debited:  {summary['total_debited_cents']} cents")
    click.echo(f"  transactions: {summary['transaction_count']}")


@ledger_group.command('fingerprint')
@click.argument('path', type=click.File('r', encoding='utf-8'))
def fingerprint(path):
    """Compute the import fingerprint of a parsed invoice JSON file."""
    try:
        data = json.load(path)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid JSON: {e}")

    click.echo(import_service.compute_fingerprint(
        data.get("supplier_id"),
        data.get("document_number"),
        data.get("emission_date"),
        data.get("lines") or [],
    ))


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
