# Overview: Flask CLI command groups for bootstrap, sync operations, and stock/consignment inspection.

# backend/rxpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to rxpos (PowerShell: $env:FLASK_APP="rxpos").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables in the main database and the offline store (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Offline sync:
# - python -m flask sync status
#   Pending / needs-review / synced counts, oldest unsynced sale.
# - python -m flask sync run [--workers 4] [--limit 100]
#   Push eligible pending transactions once.
# - python -m flask sync retry 42
#   Manual retry of one transaction (ignores backoff and review threshold).
# - python -m flask sync recover-stale [--older-than 30]
#   Return transactions stuck in 'syncing' to 'pending' and record any
#   invoice missing from the offline store.
# - python -m flask sync worker [--interval 60] [--iterations N]
#   Foreground sync loop (Ctrl+C stops after in-flight pushes finish).
#
# Stock:
# - python -m flask stock expiring [--days 90] [--warehouse-id 1]
# - python -m flask stock low --warehouse-id 1
# - python -m flask stock mark-expired [--warehouse-id 1]
#   Move available batches past their expiry date to the 'expired' zone.
#
# Consignments:
# - python -m flask consignments overdue
# - python -m flask consignments due-soon [--days 7]

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services import batch_service, consignment_service, offline_service, sync_service
from .services.errors import ServiceError


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create tables in every bind (main database and offline store)."""
    db.create_all()
    click.echo("PASS Database schema ready (main + offline store).")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including unsynced offline transactions!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA, including unsynced sales. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('sync')
def sync_group():
    """Offline transaction sync commands."""


@sync_group.command('status')
@with_appcontext
def sync_status():
    summary = offline_service.get_sync_status_summary()
    click.echo(f"Pending:       {summary['pending']}")
    click.echo(f"Needs review:  {summary['needs_review']} (>= {summary['manual_review_threshold']} attempts)")
    click.echo(f"Syncing:       {summary['syncing']}")
    click.echo(f"Synced:        {summary['synced']}")
    click.echo(f"Oldest unsynced: {summary['oldest_unsynced_at'] or '-'}")
    click.echo(f"Last synced:     {summary['last_synced_at'] or '-'}")
    if not current_app.config.get("SYNC_ENDPOINT_URL"):
        click.echo("WARN RXPOS_SYNC_ENDPOINT_URL is not set; sync is disabled.")


@sync_group.command('run')
@click.option('--workers', type=int, default=None, help='Concurrent pushes (default SYNC_MAX_WORKERS)')
@click.option('--limit', type=int, default=None, help='Max transactions this run (default SYNC_BATCH_SIZE)')
@with_appcontext
def sync_run(workers, limit):
    summary = sync_service.sync_all_pending(max_workers=workers, limit=limit)
    click.echo(f"Synced {summary.synced}, failed {summary.failed}, skipped {summary.skipped}")
    for err in summary.errors:
        click.echo(f"FAIL {err['invoice_number']}: {err['error']}")


@sync_group.command('retry')
@click.argument('transaction_id', type=int)
@with_appcontext
def sync_retry(transaction_id):
    """Manual retry of one transaction."""
    try:
        tx = sync_service.sync_transaction(transaction_id)
    except ServiceError as e:
        raise click.ClickException(str(e))
    if tx.synced:
        click.echo(f"PASS {tx.invoice_number} synced")
    else:
        click.echo(f"FAIL {tx.invoice_number} (attempt {tx.sync_attempt_count}): {tx.sync_error}")


@sync_group.command('recover-stale')
@click.option('--older-than', 'older_than', type=float, default=None, help='Seconds since last attempt')
@with_appcontext
def sync_recover_stale(older_than):
    backfilled = offline_service.record_missing_offline_transactions()
    if backfilled:
        click.echo(f"WARN Recorded {len(backfilled)} invoices missing from the offline store.")
    count = sync_service.recover_stale_syncing(older_than_seconds=older_than)
    click.echo(f"Recovered {count} stale transactions.")


@sync_group.command('worker')
@click.option('--interval', type=float, default=None, help='Seconds between runs (default SYNC_INTERVAL_SECONDS)')
@click.option('--iterations', type=int, default=None, help='Stop after N runs (default: run until interrupted)')
@with_appcontext
def sync_worker(interval, iterations):
    worker = sync_service.SyncWorker(current_app._get_current_object(), interval=interval)
    click.echo(f"START sync worker (interval {worker.interval:g}s)")
    try:
        worker.run(iterations=iterations)
    except KeyboardInterrupt:
        worker.stop()
        click.echo("STOP sync worker interrupted")
    for i, summary in enumerate(worker.runs, start=1):
        click.echo(f"Run {i}: synced {summary.synced}, failed {summary.failed}, skipped {summary.skipped}")


@click.group('stock')
def stock_group():
    """Stock inspection commands."""


@stock_group.command('expiring')
@click.option('--days', type=int, default=None, help='Window in days (default EXPIRY_WARNING_DAYS)')
@click.option('--warehouse-id', type=int, default=None)
@with_appcontext
def stock_expiring(days, warehouse_id):
    if days is None:
        days = int(current_app.config.get("EXPIRY_WARNING_DAYS", 90))
    batches = batch_service.get_expiring_batches(days, warehouse_id=warehouse_id)
    if not batches:
        click.echo(f"No batches expiring within {days} days.")
        return
    for b in batches:
        click.echo(
            f"{b.expiry_date.isoformat()}  batch {b.id}  lot {b.lot_number}  "
            f"product {b.product_id}  warehouse {b.warehouse_id}  qty {b.quantity}"
        )


@stock_group.command('low')
@click.option('--warehouse-id', type=int, required=True)
@with_appcontext
def stock_low(warehouse_id):
    products = batch_service.get_low_stock_products(warehouse_id)
    if not products:
        click.echo("No products at or below reorder point.")
        return
    for p in products:
        click.echo(f"{p['sku']:<16} {p['name']:<40} available {p['available_quantity']}  reorder at {p['reorder_point']}")


@stock_group.command('mark-expired')
@click.option('--warehouse-id', type=int, default=None)
@with_appcontext
def stock_mark_expired(warehouse_id):
    batches = batch_service.mark_expired_batches(warehouse_id=warehouse_id)
    click.echo(f"Moved {len(batches)} batches to the expired zone.")


@click.group('consignments')
def consignments_group():
    """Consignment inspection commands."""


def _echo_consignments(rows):
    for c in rows:
        due = consignment_service.calculate_payment_due(c)
        click.echo(
            f"{c.consignment_number}  {c.supplier_name}  due {c.payment_due_date.isoformat()}  "
            f"owed USD {due.usd_cents / 100:.2f} / local {due.local_cents / 100:.2f}"
        )


@consignments_group.command('overdue')
@with_appcontext
def consignments_overdue():
    rows = consignment_service.get_overdue_consignments()
    if not rows:
        click.echo("No overdue consignments.")
        return
    _echo_consignments(rows)


@consignments_group.command('due-soon')
@click.option('--days', type=int, default=None, help='Window in days (default CONSIGNMENT_DUE_SOON_DAYS)')
@with_appcontext
def consignments_due_soon(days):
    rows = consignment_service.get_due_soon_consignments(days=days)
    if not rows:
        click.echo("No consignments due soon.")
        return
    _echo_consignments(rows)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sync_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(consignments_group)
