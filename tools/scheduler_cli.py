#!/usr/bin/env python3
"""
Discharge Auto-Scheduling CLI Tool

Operator commands for running the scheduler, inspecting runs and scheduled
items, managing clinic configs, and firing items by hand.

Usage:
    python tools/scheduler_cli.py run --dry-run
    python tools/scheduler_cli.py run --clinic clinic-1 --clinic clinic-2 --force
    python tools/scheduler_cli.py runs --limit 5
    python tools/scheduler_cli.py run-details <run-id>
    python tools/scheduler_cli.py config show <clinic-id>
    python tools/scheduler_cli.py config set <clinic-id> --call-delay-days 3 --preferred-call-time 15:30
    python tools/scheduler_cli.py config toggle <clinic-id> --enable
    python tools/scheduler_cli.py preview <clinic-id>
    python tools/scheduler_cli.py items <clinic-id> --status scheduled
    python tools/scheduler_cli.py cancel <auto-item-id> --user ops --reason "owner asked"
    python tools/scheduler_cli.py execute <item-id> --channel email
    python tools/scheduler_cli.py worker
"""
import json

import click
from dotenv import load_dotenv
from tabulate import tabulate

from scheduling.models import AutoScheduledItemStatus, Channel, RunStatus


def _short(value, length=8):
    if not value:
        return "-"
    return value if len(value) <= length else value[:length] + "..."


def _when(dt):
    return dt.strftime('%Y-%m-%d %H:%M UTC') if dt else "-"


# CLI Commands
@click.group()
@click.pass_context
def cli(ctx):
    """Discharge Follow-up Auto-Scheduling CLI"""
    load_dotenv()
    ctx.ensure_object(dict)
    if 'runtime' not in ctx.obj:
        from scheduling.runtime import build_runtime
        ctx.obj['runtime'] = build_runtime()


@cli.command()
@click.option('--dry-run', is_flag=True, help="Decide everything but create nothing")
@click.option('--force', is_flag=True, help="Process the given clinics even if disabled")
@click.option('--clinic', 'clinic_ids', multiple=True, help="Clinic id (repeatable)")
@click.pass_context
def run(ctx, dry_run, force, clinic_ids):
    """Run auto-scheduling now"""
    scheduler = ctx.obj['runtime'].scheduler

    if force and not clinic_ids:
        click.echo("⚠️  --force only applies together with --clinic; running enabled clinics")

    result = scheduler.run_for_all_clinics(dry_run=dry_run, force=force, clinic_ids=list(clinic_ids))

    label = "Dry run" if dry_run else "Run"
    click.echo(f"{'✅' if result.status == RunStatus.COMPLETED else '⚠️ '} {label} {result.id}: {result.status.value}")
    click.echo(f"   Cases processed: {result.total_cases_processed}")
    click.echo(f"   Emails scheduled: {result.total_emails_scheduled}")
    click.echo(f"   Calls scheduled: {result.total_calls_scheduled}")
    click.echo(f"   Errors: {result.total_errors}")
    if result.error_message:
        click.echo(f"   Error: {result.error_message}")

    if result.results:
        table_data = [
            [
                r.clinic_name,
                r.cases_found,
                r.cases_processed,
                r.emails_scheduled,
                r.calls_scheduled,
                len(r.skipped),
                len(r.errors),
            ]
            for r in result.results
        ]
        click.echo(tabulate(
            table_data,
            headers=['Clinic', 'Found', 'Processed', 'Emails', 'Calls', 'Skipped', 'Errors'],
            tablefmt='grid'
        ))
        for r in result.results:
            if r.skip_reason:
                click.echo(f"   ⏭️  {r.clinic_id}: {r.skip_reason}")

    if dry_run:
        planned = [p for r in result.results for p in r.planned]
        if planned:
            click.echo("\n📋 Planned items:")
            click.echo(tabulate(
                [[p['case_id'], p['channel'], p['scheduled_for']] for p in planned],
                headers=['Case', 'Channel', 'Scheduled For'],
                tablefmt='simple'
            ))

    if result.status == RunStatus.FAILED:
        ctx.exit(1)


@cli.command()
@click.option('--limit', default=10, help="Number of runs to show")
@click.pass_context
def runs(ctx, limit):
    """List recent runs, newest first"""
    recent = ctx.obj['runtime'].scheduler.get_recent_runs(limit)
    if not recent:
        click.echo("📋 No runs recorded")
        return

    table_data = [
        [
            r.id,
            _when(r.started_at),
            r.status.value,
            r.total_cases_processed,
            r.total_emails_scheduled,
            r.total_calls_scheduled,
            r.total_errors,
        ]
        for r in recent
    ]
    click.echo(tabulate(
        table_data,
        headers=['Run ID', 'Started', 'Status', 'Processed', 'Emails', 'Calls', 'Errors'],
        tablefmt='grid'
    ))


@cli.command('run-details')
@click.argument('run_id')
@click.pass_context
def run_details(ctx, run_id):
    """Show one run with its per-clinic results"""
    result = ctx.obj['runtime'].scheduler.get_run(run_id)
    if result is None:
        click.echo(f"❌ Run '{run_id}' not found")
        ctx.exit(1)
    click.echo(json.dumps(result.to_dict(), indent=2))


@cli.group()
def config():
    """Show and change clinic scheduling configs"""


@config.command('show')
@click.argument('clinic_id', required=False)
@click.pass_context
def config_show(ctx, clinic_id):
    """Show one clinic's config, or list all configs"""
    config_store = ctx.obj['runtime'].config_store
    if clinic_id:
        click.echo(json.dumps(config_store.get_or_create(clinic_id).to_dict(), indent=2))
        return

    configs = config_store.list_all()
    if not configs:
        click.echo("📋 No clinic configs")
        return
    table_data = [
        [
            c.clinic_id,
            "yes" if c.enabled else "no",
            f"{'on' if c.auto_email_enabled else 'off'} +{c.email_delay_days}d @ {c.preferred_email_time}",
            f"{'on' if c.auto_call_enabled else 'off'} +{c.call_delay_days}d @ {c.preferred_call_time}",
        ]
        for c in configs
    ]
    click.echo(tabulate(table_data, headers=['Clinic', 'Enabled', 'Email', 'Call'], tablefmt='grid'))


@config.command('set')
@click.argument('clinic_id')
@click.option('--email-delay-days', type=int)
@click.option('--call-delay-days', type=int)
@click.option('--preferred-email-time', help="HH:MM clinic local time")
@click.option('--preferred-call-time', help="HH:MM clinic local time")
@click.option('--auto-email/--no-auto-email', default=None)
@click.option('--auto-call/--no-auto-call', default=None)
@click.option('--criteria', help="Eligibility criteria as a JSON object")
@click.pass_context
def config_set(ctx, clinic_id, email_delay_days, call_delay_days, preferred_email_time,
               preferred_call_time, auto_email, auto_call, criteria):
    """Update selected fields of a clinic's config"""
    fields = {
        'email_delay_days': email_delay_days,
        'call_delay_days': call_delay_days,
        'preferred_email_time': preferred_email_time,
        'preferred_call_time': preferred_call_time,
        'auto_email_enabled': auto_email,
        'auto_call_enabled': auto_call,
    }
    fields = {name: value for name, value in fields.items() if value is not None}
    if criteria:
        try:
            fields['eligibility_criteria'] = json.loads(criteria)
        except ValueError as e:
            click.echo(f"❌ Invalid criteria JSON: {e}")
            ctx.exit(1)

    if not fields:
        click.echo("Nothing to update")
        return

    try:
        updated = ctx.obj['runtime'].config_store.update(clinic_id, fields)
    except ValueError as e:
        click.echo(f"❌ {e}")
        ctx.exit(1)
    click.echo(f"✅ Updated {', '.join(sorted(fields))} for clinic {clinic_id}")
    click.echo(json.dumps(updated.to_dict(), indent=2))


@config.command('toggle')
@click.argument('clinic_id')
@click.option('--enable/--disable', required=True)
@click.pass_context
def config_toggle(ctx, clinic_id, enable):
    """Enable or disable auto-scheduling for a clinic"""
    ctx.obj['runtime'].config_store.toggle_enabled(clinic_id, enable)
    click.echo(f"✅ Auto-scheduling {'enabled' if enable else 'disabled'} for clinic {clinic_id}")


@cli.command()
@click.argument('clinic_id')
@click.pass_context
def preview(ctx, clinic_id):
    """Show what a run would do for one clinic right now"""
    result = ctx.obj['runtime'].scheduler.preview_clinic(clinic_id)
    if result.aborted:
        for error in result.errors:
            click.echo(f"❌ {error['message']}")
        ctx.exit(1)

    click.echo(f"🏥 {result.clinic_name}: {result.cases_found} candidate cases")
    rows = [[p['case_id'], 'schedule', f"{p['channel']} at {p['scheduled_for']}"] for p in result.planned]
    rows += [[s['case_id'], 'skip', f"{s['reason_code']}: {s['reason']}"] for s in result.skipped]
    rows += [[e.get('case_id', '-'), 'error', e['message']] for e in result.errors]
    if rows:
        click.echo(tabulate(rows, headers=['Case', 'Decision', 'Detail'], tablefmt='simple'))


@cli.command()
@click.argument('clinic_id')
@click.option('--status', type=click.Choice([s.value for s in AutoScheduledItemStatus]),
              help="Filter by status")
@click.option('--limit', default=50, help="Maximum number of items to show")
@click.pass_context
def items(ctx, clinic_id, status, limit):
    """List a clinic's auto-scheduled items, newest first"""
    status_filter = AutoScheduledItemStatus(status) if status else None
    auto_items = ctx.obj['runtime'].scheduler.get_scheduled_items(clinic_id, status_filter, limit)
    if not auto_items:
        click.echo("📋 No auto-scheduled items found")
        return

    table_data = [
        [
            item.id,
            item.case_id,
            item.status.value,
            _short(item.scheduled_email_id),
            _short(item.scheduled_call_id),
            _when(item.created_at),
        ]
        for item in auto_items
    ]
    click.echo(tabulate(
        table_data,
        headers=['Auto Item', 'Case', 'Status', 'Email', 'Call', 'Created'],
        tablefmt='grid'
    ))


@cli.command()
@click.argument('auto_item_id')
@click.option('--user', 'user_id', required=True, help="Operator cancelling the item")
@click.option('--reason', required=True, help="Why the follow-up is cancelled")
@click.pass_context
def cancel(ctx, auto_item_id, user_id, reason):
    """Cancel an auto-scheduled item and its queued follow-ups"""
    result = ctx.obj['runtime'].scheduler.cancel(auto_item_id, user_id, reason)
    if not result.success:
        click.echo(f"❌ Could not cancel {auto_item_id}: {result.error}")
        ctx.exit(1)
    click.echo(f"✅ Cancelled {auto_item_id}")
    for item_id in result.cancelled_item_ids:
        click.echo(f"   withdrew {item_id}")


@cli.command()
@click.argument('item_id')
@click.option('--channel', type=click.Choice([c.value for c in Channel]), default='call')
@click.pass_context
def execute(ctx, item_id, channel):
    """Fire a scheduled item now (skipped unless it is still queued)"""
    result = ctx.obj['runtime'].executor.execute(Channel(channel), item_id)
    click.echo(json.dumps(result.to_dict(), indent=2))
    if not result.success and not result.retry_scheduled:
        ctx.exit(1)


@cli.command()
@click.option('--worker-name', help="Name for the worker process")
@click.pass_context
def worker(ctx, worker_name):
    """Start the dispatch worker"""
    from scheduling.worker import DischargeDispatchWorker

    runtime = ctx.obj['runtime']
    click.echo(f"🚀 Starting dispatch worker on '{runtime.settings.dispatch_queue_name}'")
    DischargeDispatchWorker(runtime.settings).start_worker(worker_name=worker_name)


if __name__ == '__main__':
    cli()
