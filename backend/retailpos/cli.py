# Overview: Flask CLI command groups for bootstrap, stock ledger maintenance and reports.

# backend/retailpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--business "Corner Shop"] [--location "Main"] [--owner owner]
#   Idempotent bootstrap: creates a business, a location, an owner user and a "General" category.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock ledger:
# - python -m flask inventory record --business-id 1 --product-id 1 --location-id 1 --kind purchase --quantity 10 --user-id 1
#   Record one movement (add --reference-kind/--reference-id for non-manual references).
# - python -m flask inventory rebuild --product-id 1 --location-id 1
#   Replay the ledger into the snapshot for one (product, location).
# - python -m flask inventory verify --business-id 1 [--location-id 1] [--fix]
#   List snapshots that disagree with the ledger; --fix rebuilds them.
# - python -m flask inventory summary --product-id 1 --location-id 1
#   Net quantity and movement count per kind.
#
# Sales:
# - python -m flask sales next-number --location-id 1 [--date 2024-05-01]
#   Allocate (and consume) the next sale number.
# - python -m flask sales receipt --business-id 1 --sale-id 1 [--template default|compact|detailed] [--mark-printed]
#   Print a text receipt; --mark-printed flags it as printed.
#
# Expenses:
# - python -m flask expenses generate-recurring --business-id 1 [--as-of 2024-05-31]
#   Write pending copies of recurring expenses due on or before the date.
#
# Reports:
# - python -m flask reports sales --business-id 1 [--location-id 1] [--start 2024-05-01 --end 2024-05-31 | --days 30]
# - python -m flask reports inventory --business-id 1 [--location-id 1]
# - python -m flask reports customers --business-id 1 [--start 2024-05-01 --end 2024-05-31 | --days 30]
#   Print the report as JSON.

import json

import click
from flask.cli import with_appcontext

from .errors import RetailPOSError, ValidationError
from .extensions import db
from .models import Business, Category, Location, MovementReference, User
from .models.inventory import MOVEMENT_KINDS
from .services import (
    catalog_service,
    expense_service,
    movement_service,
    numbering_service,
    receipt_service,
    reporting_service,
)
from .time_utils import parse_iso_datetime


def _fail(exc: RetailPOSError):
    click.echo(f"FAIL {exc.code}: {exc}")
    if exc.details:
        click.echo(f"     {json.dumps(exc.details, default=str)}")
    raise click.exceptions.Exit(1)


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--business', 'business_name', default='Default Business', help='Business name')
@click.option('--location', 'location_name', default='Main', help='Location name')
@click.option('--owner', 'owner_username', default='owner', help='Owner username')
@with_appcontext
def init_system(business_name, location_name, owner_username):
    """
    Initialize a usable single-business setup. Safe to run repeatedly.
    """
    click.echo("START Initializing RetailPOS...")

    business = db.session.query(Business).filter_by(name=business_name).first()
    if not business:
        business = catalog_service.create_business(name=business_name)
        click.echo(f"PASS Created business: {business.name} (ID: {business.id})")
    else:
        click.echo(f"PASS Using existing business: {business.name} (ID: {business.id})")

    location = db.session.query(Location).filter_by(business_id=business.id, name=location_name).first()
    if not location:
        location = catalog_service.create_location(business_id=business.id, name=location_name)
        click.echo(f"PASS Created location: {location.name} (ID: {location.id})")
    else:
        click.echo(f"PASS Using existing location: {location.name} (ID: {location.id})")

    owner = db.session.query(User).filter_by(business_id=business.id, username=owner_username).first()
    if not owner:
        owner = catalog_service.create_user(
            business_id=business.id,
            username=owner_username,
            role="owner",
            location_id=location.id,
        )
        click.echo(f"PASS Created owner user: {owner.username} (ID: {owner.id})")
    else:
        click.echo(f"PASS Using existing user: {owner.username} (ID: {owner.id})")

    if not db.session.query(Category).filter_by(business_id=business.id, name="General").first():
        category = catalog_service.create_category(business_id=business.id, name="General")
        click.echo(f"PASS Created category: {category.name} (ID: {category.id})")

    click.echo("DONE RetailPOS initialized.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('inventory')
def inventory_group():
    """Stock ledger commands."""


@inventory_group.command('record')
@click.option('--business-id', type=int, required=True)
@click.option('--product-id', type=int, required=True)
@click.option('--location-id', type=int, required=True)
@click.option('--kind', type=click.Choice(sorted(MOVEMENT_KINDS)), required=True)
@click.option('--quantity', type=int, required=True, help='Magnitude; the sign follows the kind')
@click.option('--user-id', type=int, required=True)
@click.option('--reference-kind', default='manual', show_default=True)
@click.option('--reference-id', default=None)
@click.option('--note', default=None)
@click.option('--dedup-key', default=None, help='Makes a retried command a no-op')
@with_appcontext
def record(business_id, product_id, location_id, kind, quantity, user_id, reference_kind, reference_id, note, dedup_key):
    """Record one stock movement."""
    try:
        movement = movement_service.record_movement(
            product_id=product_id,
            location_id=location_id,
            business_id=business_id,
            kind=kind,
            magnitude=quantity,
            reference=MovementReference(reference_kind, reference_id),
            user_id=user_id,
            note=note,
            dedup_key=dedup_key,
        )
    except RetailPOSError as exc:
        _fail(exc)

    click.echo(
        f"PASS Movement {movement.id}: {movement.kind} {movement.quantity:+d} "
        f"({movement.previous_stock} -> {movement.new_stock})"
    )


@inventory_group.command('rebuild')
@click.option('--product-id', type=int, required=True)
@click.option('--location-id', type=int, required=True)
@with_appcontext
def rebuild(product_id, location_id):
    """Recompute one snapshot from the ledger."""
    try:
        level = movement_service.rebuild_snapshot(product_id=product_id, location_id=location_id)
    except RetailPOSError as exc:
        _fail(exc)
    click.echo(f"PASS Snapshot product={product_id} location={location_id} quantity={level.quantity}")


@inventory_group.command('verify')
@click.option('--business-id', type=int, required=True)
@click.option('--location-id', type=int, default=None)
@click.option('--fix', is_flag=True, help='Rebuild every mismatching snapshot')
@with_appcontext
def verify(business_id, location_id, fix):
    """Compare snapshots with the ledger."""
    mismatches = movement_service.verify_snapshots(business_id=business_id, location_id=location_id)
    if not mismatches:
        click.echo("PASS All snapshots match the ledger")
        return

    for row in mismatches:
        click.echo(
            f"DRIFT product={row['product_id']} location={row['location_id']} "
            f"snapshot={row['snapshot_quantity']} ledger={row['ledger_quantity']}"
        )
    if not fix:
        click.echo(f"WARN {len(mismatches)} mismatch(es). Re-run with --fix to rebuild.")
        raise click.exceptions.Exit(1)

    for row in mismatches:
        try:
            movement_service.rebuild_snapshot(product_id=row["product_id"], location_id=row["location_id"])
        except RetailPOSError as exc:
            _fail(exc)
    click.echo(f"PASS Rebuilt {len(mismatches)} snapshot(s)")


@inventory_group.command('summary')
@click.option('--product-id', type=int, required=True)
@click.option('--location-id', type=int, required=True)
@with_appcontext
def summary(product_id, location_id):
    """Per-kind movement totals for one (product, location)."""
    rows = movement_service.movement_summary(product_id=product_id, location_id=location_id)
    if not rows:
        click.echo("No movements recorded")
        return
    for row in rows:
        click.echo(f"{row['kind']:<12} {row['total_quantity']:>+8d}  ({row['count']} movements)")
    click.echo(f"on hand: {movement_service.get_stock(product_id, location_id)}")


@click.group('sales')
def sales_group():
    """Sale numbering commands."""


@sales_group.command('next-number')
@click.option('--location-id', type=int, required=True)
@click.option('--date', 'on_date', default=None, help='Business date (YYYY-MM-DD, UTC); defaults to today')
@with_appcontext
def next_number(location_id, on_date):
    """Allocate the next sale number for a location."""
    try:
        on = parse_iso_datetime(on_date)
    except ValueError:
        _fail(ValidationError(f"invalid --date {on_date!r}; expected YYYY-MM-DD"))
    try:
        number = numbering_service.next_sale_number(location_id, now=on)
    except RetailPOSError as exc:
        _fail(exc)
    click.echo(number)


@sales_group.command('receipt')
@click.option('--business-id', type=int, required=True)
@click.option('--sale-id', type=int, required=True)
@click.option('--template', type=click.Choice(receipt_service.RECEIPT_TEMPLATES), default='default', show_default=True)
@click.option('--mark-printed', is_flag=True, help='Flag the receipt as printed after rendering')
@with_appcontext
def receipt(business_id, sale_id, template, mark_printed):
    """Print a text receipt for a sale."""
    try:
        text = receipt_service.render_receipt(sale_id=sale_id, business_id=business_id, template=template)
        if mark_printed:
            receipt_service.mark_receipt_printed(sale_id=sale_id, business_id=business_id)
    except RetailPOSError as exc:
        _fail(exc)
    click.echo(text, nl=False)


@click.group('expenses')
def expenses_group():
    """Expense maintenance commands."""


@expenses_group.command('generate-recurring')
@click.option('--business-id', type=int, required=True)
@click.option('--as-of', type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help='Defaults to today (UTC)')
@with_appcontext
def generate_recurring(business_id, as_of):
    """Write pending copies of recurring expenses that have come due."""
    try:
        created = expense_service.generate_recurring(
            business_id=business_id,
            as_of=as_of.date() if as_of else None,
        )
    except RetailPOSError as exc:
        _fail(exc)
    for expense in created:
        click.echo(f"  + #{expense.id} {expense.category} {expense.expense_date.isoformat()} {expense.amount_cents}")
    click.echo(f"DONE: {len(created)} expense(s) generated")


@click.group('reports')
def reports_group():
    """Reporting commands (JSON output)."""


@reports_group.command('sales')
@click.option('--business-id', type=int, required=True)
@click.option('--location-id', type=int, default=None)
@click.option('--start', default=None, help='ISO date or datetime (UTC)')
@click.option('--end', default=None, help='ISO date or datetime (UTC), inclusive')
@click.option('--days', type=int, default=30, show_default=True, help='Window when --start/--end are omitted')
@with_appcontext
def sales_report(business_id, location_id, start, end, days):
    if not (start and end):
        start, end = reporting_service.report_window(days)
    try:
        report = reporting_service.generate_sales_report(
            business_id=business_id,
            location_id=location_id,
            start=start,
            end=end,
        )
    except RetailPOSError as exc:
        _fail(exc)
    click.echo(json.dumps(report, indent=2))


@reports_group.command('inventory')
@click.option('--business-id', type=int, required=True)
@click.option('--location-id', type=int, default=None)
@with_appcontext
def inventory_report(business_id, location_id):
    try:
        report = reporting_service.generate_inventory_report(business_id=business_id, location_id=location_id)
    except RetailPOSError as exc:
        _fail(exc)
    click.echo(json.dumps(report, indent=2))


@reports_group.command('customers')
@click.option('--business-id', type=int, required=True)
@click.option('--start', default=None, help='ISO date or datetime (UTC)')
@click.option('--end', default=None, help='ISO date or datetime (UTC), inclusive')
@click.option('--days', type=int, default=30, show_default=True, help='Window when --start/--end are omitted')
@with_appcontext
def customers_report(business_id, start, end, days):
    if not (start and end):
        start, end = reporting_service.report_window(days)
    try:
        report = reporting_service.generate_customer_report(business_id=business_id, start=start, end=end)
    except RetailPOSError as exc:
        _fail(exc)
    click.echo(json.dumps(report, indent=2))


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(sales_group)
    app.cli.add_command(expenses_group)
    app.cli.add_command(reports_group)
