import json

import click
from flask.cli import with_appcontext
from creatorhub.services import commissions as commission_service
from creatorhub.services import ledger
from creatorhub.services import subscriptions as subscription_service
from creatorhub.services.errors import PaymentError
from creatorhub.services.processor import get_processor

@click.group()
def subscriptions():
    """Subscription reconciliation."""

@subscriptions.command("sync")
@click.option("--creator-id", type=int, required=True)
@with_appcontext
def subscriptions_sync(creator_id):
    try:
        result = subscription_service.sync_tier_subscriptions(creator_id, processor=get_processor())
    except PaymentError as e:
        raise click.ClickException(f"{e.code}: {e.detail}") from e
    click.echo(
        f"Synced creator {creator_id}: synced={result.synced} skipped={result.skipped} "
        f"mismatches={result.mismatches}"
    )

@subscriptions.command("expire")
@with_appcontext
def subscriptions_expire():
    """Cancel rows whose paid period ended with cancel_at_period_end set (run from cron)."""
    count = subscription_service.expire_lapsed_subscriptions()
    click.echo(f"Expired {count} subscription(s)")

@click.group()
def commissions():
    """Commission maintenance."""

@commissions.command("reconcile")
@click.option("--request-id", type=int, required=True)
@with_appcontext
def commissions_reconcile(request_id):
    try:
        result = commission_service.reconcile_commission(request_id, processor=get_processor())
    except PaymentError as e:
        raise click.ClickException(f"{e.code}: {e.detail}") from e
    click.echo(json.dumps(result, sort_keys=True))

@click.group("ledger")
def ledger_group():
    """Idempotency ledger."""

@ledger_group.command("show")
@click.option("--event-id", required=True)
@with_appcontext
def ledger_show(event_id):
    entry = ledger.get_entry(event_id)
    if entry is None:
        raise click.ClickException("Event not in ledger")
    click.echo(json.dumps({
        "event_id": entry.processor_event_id,
        "type": entry.type,
        "notes": entry.notes,
        "processed_at": entry.processed_at.isoformat() if entry.processed_at else None,
    }, sort_keys=True))

def register_cli(app):
    app.cli.add_command(subscriptions)
    app.cli.add_command(commissions)
    app.cli.add_command(ledger_group)
