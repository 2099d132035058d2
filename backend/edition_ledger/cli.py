# Overview: Flask CLI command group for ledger inspection and maintenance.

# backend/edition_ledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to edition_ledger (PowerShell: $env:FLASK_APP="edition_ledger").
# - Use: python -m flask ledger <command> [options]
#
# Resequencing:
# - python -m flask ledger resequence 7001
#   Run one pass for a product now (also clears a NEEDS_REVIEW flag when clean).
# - python -m flask ledger resequence-all [--workers 4]
#   Run a pass for every product that has line items.
# - python -m flask ledger drain [--include-failed]
#   Run passes for products left in the resequence queue.
#
# Inspection:
# - python -m flask ledger failed
#   List products marked FAILED or NEEDS_REVIEW.
# - python -m flask ledger check [--product-id 7001]
#   Integrity audit; exits 1 when critical issues are found.
#
# Ingestion:
# - python -m flask ledger sync-file orders.json [--source incremental]
#   Ingest a JSON file holding a list of orders (or {"orders": [...]}).

import json

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import LineItem, REQUEST_FAILED, REQUEST_NEEDS_REVIEW
from .services import audit_service, ingestion_service
from .services.ledger_service import ledger, reassign_editions


def _echo_outcome(outcome) -> None:
    if outcome.ok:
        click.echo(
            f"PASS {outcome.product_id}: {outcome.edition_total or 0} active, "
            f"{outcome.writes} rows written, {outcome.certificates_issued} certificates issued"
        )
    else:
        click.echo(f"FAIL {outcome.product_id}: {outcome.status} ({outcome.error})")
    for violation in outcome.violations:
        click.echo(f"   WARN {violation}")


@click.group('ledger')
def ledger_group():
    """Edition ledger maintenance."""
    pass


@ledger_group.command('resequence')
@click.argument('product_id')
@with_appcontext
def resequence_cli(product_id):
    """
    Run a resequencing pass for one product.

    Example:
        flask ledger resequence 7001
    """
    outcome = reassign_editions(product_id)
    _echo_outcome(outcome)
    if not outcome.ok:
        raise SystemExit(1)


@ledger_group.command('resequence-all')
@click.option('--workers', default=1, show_default=True, type=click.IntRange(1, 32),
              help='Products resequenced in parallel')
@with_appcontext
def resequence_all_cli(workers):
    """Run a pass for every product that has line items."""
    product_ids = [pid for (pid,) in db.session.query(LineItem.product_id).distinct().all()]
    db.session.rollback()

    if not product_ids:
        click.echo("No products found.")
        return

    click.echo(f"START Resequencing {len(product_ids)} products...")
    outcomes = ledger.request_passes(product_ids, source="operator", max_workers=workers)
    failed = 0
    for pid in sorted(outcomes):
        _echo_outcome(outcomes[pid])
        if not outcomes[pid].ok:
            failed += 1

    click.echo(f"DONE {len(outcomes) - failed} completed, {failed} failed")
    if failed:
        raise SystemExit(1)


@ledger_group.command('drain')
@click.option('--include-failed', is_flag=True, help='Retry FAILED products too')
@with_appcontext
def drain_cli(include_failed):
    """Run passes for every product waiting in the resequence queue."""
    outcomes = ledger.drain(include_failed=include_failed)
    if not outcomes:
        click.echo("Queue is empty.")
        return

    for pid in sorted(outcomes):
        _echo_outcome(outcomes[pid])
    if any(not o.ok for o in outcomes.values()):
        raise SystemExit(1)


@ledger_group.command('failed')
@with_appcontext
def failed_cli():
    """List products that need operator attention."""
    rows = [
        r for r in ledger.queued_requests()
        if r.status in (REQUEST_FAILED, REQUEST_NEEDS_REVIEW)
    ]
    if not rows:
        click.echo("No failed products.")
        return

    click.echo("\n" + "=" * 80)
    click.echo(f"{'PRODUCT':<20} {'STATUS':<14} {'ATTEMPTS':<9} LAST ERROR")
    click.echo("=" * 80)
    for r in rows:
        click.echo(f"{r.product_id:<20} {r.status:<14} {r.attempts:<9} {r.last_error or ''}")


@ledger_group.command('check')
@click.option('--product-id', default=None, help='Limit the audit to one product')
@with_appcontext
def check_cli(product_id):
    """
    Audit stored editions.

    Example:
        flask ledger check
        flask ledger check --product-id 7001
    """
    result = audit_service.validate_integrity(product_id)
    if not result["issues"]:
        click.echo("PASS No integrity issues found.")
        return

    critical = 0
    for issue in result["issues"]:
        if issue["severity"] == audit_service.SEVERITY_CRITICAL:
            critical += 1
            click.echo(f"FAIL [{issue['type']}] {issue['description']}")
        else:
            click.echo(f"WARN [{issue['type']}] {issue['description']}")

    click.echo(f"\n{result['issues_found']} issues found ({critical} critical)")
    if critical:
        raise SystemExit(1)


@ledger_group.command('sync-file')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@click.option('--source', type=click.Choice([ingestion_service.SOURCE_BULK, ingestion_service.SOURCE_INCREMENTAL]),
              default=ingestion_service.SOURCE_BULK, show_default=True)
@with_appcontext
def sync_file_cli(path, source):
    """Ingest orders from a JSON export."""
    with open(path, encoding="utf-8") as fh:
        try:
            data = json.load(fh)
        except json.JSONDecodeError as e:
            click.echo(f"FAIL {path} is not valid JSON: {e}")
            raise SystemExit(1)

    orders = data.get("orders") if isinstance(data, dict) else data
    if not isinstance(orders, list):
        click.echo("FAIL Expected a list of orders or an object with an 'orders' list")
        raise SystemExit(1)

    report = ingestion_service.sync_orders(orders, source=source)
    click.echo(f"PASS Received {report.received} orders")
    click.echo(f"   Created: {report.orders_created}  Updated: {report.orders_updated}  "
               f"Unchanged: {report.orders_unchanged}")
    click.echo(f"   Line items created: {report.line_items_created}  "
               f"Status changes: {report.status_changes}  Re-keyed: {report.line_items_rekeyed}")
    for skipped in report.skipped:
        click.echo(f"   WARN skipped order={skipped['order_id']} item={skipped['line_item_id']}: {skipped['error']}")
    for name in report.unresolved_orders:
        click.echo(f"   WARN order {name} has no canonical record yet")
    for pid in sorted(report.passes):
        click.echo(f"   Resequenced {pid}: {report.passes[pid]['status']}")
    if report.failed_orders:
        for failure in report.failed_orders:
            click.echo(f"FAIL order {failure['order_id']}: {failure['error']}")
        raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
