# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# posledger/cli.py
# Commands Legend:
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to posledger (PowerShell: $env:FLASK_APP="posledger").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Register inspection/bootstrap:
# - python -m flask registers create --code "REG-01" --name "Front Counter 1" --location "Main Floor"
#   Create a new POS register.
# - python -m flask registers list [--all]
#   List registers with their session status.
#
# Alerts (run `alerts check` from cron / a scheduler):
# - python -m flask alerts check
#   Re-derive every alert condition; creates and resolves alerts.
# - python -m flask alerts list [--type LOW_STOCK] [--severity CRITICAL]
#   List ACTIVE / ACKNOWLEDGED alerts, most severe first.
#
# Ledger verification:
# - python -m flask ledger verify
#   Compare every materialized balance with the fold of its movements.
#
# Maintenance (scheduler entry points):
# - python -m flask maintenance purge-audit --retention-days 90
# - python -m flask maintenance purge-idempotency
# - python -m flask maintenance cleanup-sync --retention-days 7
# - python -m flask maintenance run-all

import click
from flask.cli import with_appcontext

from .core import build_core
from .extensions import db
from .models import AlertSeverity, AlertType
from .services import maintenance_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


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
    click.echo("Creating tables...")
    db.create_all()
    click.echo("PASS Database reset complete.")


@click.group('registers')
def registers_group():
    """Register inspection and bootstrap commands."""


@registers_group.command('create')
@click.option('--code', required=True, help='Register code, e.g. REG-01')
@click.option('--name', required=True, help='Register name')
@click.option('--location', help='Location in store')
@with_appcontext
def create_register_cli(code, name, location):
    """
    Create a new POS register.

    Example:
        flask registers create --code REG-01 --name "Front Counter 1" --location "Main Floor"
    """
    outcome = build_core().create_register(code, name, location)
    if not outcome.ok:
        click.echo(f"FAIL Error: {outcome.error.message}")
        return

    register = outcome.value
    click.echo(f"PASS Created register: {register.code} - {register.name}")
    click.echo(f"   Location: {register.location or 'Not specified'}")
    click.echo(f"   Register ID: {register.id}")


@registers_group.command('list')
@click.option('--all', 'show_all', is_flag=True, help='Show inactive registers too')
@with_appcontext
def list_registers_cli(show_all):
    """List all registers."""
    core = build_core()
    registers = core.cash.registers(include_inactive=show_all)

    if not registers:
        click.echo("No registers found.")
        return

    click.echo("\n" + "=" * 100)
    click.echo(f"{'Code':<12} {'Name':<25} {'Location':<20} {'Active':<8} {'Status':<8} {'Balance'}")
    click.echo("=" * 100)

    for register in registers:
        open_session = core.cash.get_open_session(register.id)
        status = "OPEN" if open_session else "CLOSED"
        balance = str(open_session.balance_cents) if open_session else "-"
        active_str = "Yes" if register.is_active else "No"
        location = register.location or "-"
        click.echo(f"{register.code:<12} {register.name:<25} {location:<20} {active_str:<8} {status:<8} {balance}")

    click.echo("=" * 100 + "\n")


@click.group('alerts')
def alerts_group():
    """Alert evaluation and inspection."""


@alerts_group.command('check')
@with_appcontext
def alerts_check_cli():
    """Evaluate every alert condition."""
    result = maintenance_service.run_alert_checks(build_core())
    click.echo(f"PASS Evaluated {result.affected} alert triggers.")


@alerts_group.command('list')
@click.option('--type', 'alert_type', type=click.Choice(AlertType.ALL), help='Filter by alert type')
@click.option('--severity', type=click.Choice(list(AlertSeverity.RANK)), help='Filter by severity')
@with_appcontext
def alerts_list_cli(alert_type, severity):
    """List open alerts, most severe first."""
    alerts = build_core().list_active_alerts(alert_type=alert_type, severity=severity)
    if not alerts:
        click.echo("No open alerts.")
        return

    for alert in alerts:
        click.echo(f"[{alert.severity:<8}] {alert.alert_type:<24} {alert.status:<12} {alert.title}")


@click.group('ledger')
def ledger_group():
    """Ledger consistency commands."""


@ledger_group.command('verify')
@with_appcontext
def ledger_verify_cli():
    """Verify materialized balances against movement folds."""
    report = build_core().verify_ledgers()
    if report.ok:
        click.echo("PASS All ledgers reconcile.")
        return

    for item in report.stock:
        click.echo(f"FAIL stock   product={item.product_id} cached={item.materialized} folded={item.folded}")
    for item in report.credit:
        click.echo(f"FAIL credit  customer={item.customer_id} cached={item.materialized} folded={item.folded}")
    for item in report.cash:
        click.echo(f"FAIL cash    session={item.session_id} cached={item.materialized} folded={item.folded}")
    raise SystemExit(1)


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('purge-audit')
@click.option('--retention-days', type=int, default=None, help='Defaults to AUDIT_RETENTION_DAYS')
@with_appcontext
def purge_audit_cli(retention_days):
    """Delete audit entries older than the retention window."""
    result = maintenance_service.purge_audit_logs(build_core(), retention_days=retention_days)
    click.echo(f"Deleted {result.affected} audit entries.")


@maintenance_group.command('purge-idempotency')
@with_appcontext
def purge_idempotency_cli():
    """Delete expired idempotency records."""
    result = maintenance_service.purge_idempotency_records(build_core())
    click.echo(f"Deleted {result.affected} expired idempotency records.")


@maintenance_group.command('cleanup-sync')
@click.option('--retention-days', type=int, default=None, help='Defaults to SYNC_RETENTION_DAYS')
@with_appcontext
def cleanup_sync_cli(retention_days):
    """Remove synced queue items and re-queue failed ones."""
    result = maintenance_service.cleanup_sync_queue(build_core(), retention_days=retention_days)
    click.echo(f"Processed {result.affected} sync queue items.")


@maintenance_group.command('run-all')
@with_appcontext
def run_all_cli():
    """Run every maintenance sweep once."""
    for result in maintenance_service.run_all(build_core()):
        click.echo(f"{result.task:<20} {result.affected}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(registers_group)
    app.cli.add_command(alerts_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(maintenance_group)
