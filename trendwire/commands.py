from flask.cli import with_appcontext
import click
import json

from trendwire.generation.errors import GenerationError


def _driver():
    from trendwire.generation.driver import get_driver
    return get_driver()


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


@click.command('generation-tick')
@click.option('--force', is_flag=True, help='Ignore the stopped flag and active hours')
@with_appcontext
def generation_tick(force):
    """Run one generation tick now"""
    result = _driver().tick(force=force)
    _echo_json(result)
    if result['status'] == 'error':
        raise SystemExit(1)


@click.command('refresh-plan')
@with_appcontext
def refresh_plan():
    """Create or refresh today's plan from stored trends"""
    try:
        result = _driver().refresh_plan()
    except GenerationError as e:
        click.echo(f"Error refreshing plan: {e}", err=True)
        raise SystemExit(1)
    plan = result['plan']
    action = 'Created' if result['created'] else 'Refreshed'
    click.echo(f"{action} plan {plan['date']} with {plan['total_jobs']} jobs "
               f"(shortfall {result['plan_shortfall']})")


@click.command('import-trends')
@with_appcontext
def import_trends():
    """Import trends from the trend source and refresh today's plan"""
    try:
        result = _driver().ingest_trends()
    except GenerationError as e:
        click.echo(f"Error importing trends: {e}", err=True)
        raise SystemExit(1)
    ingest = result['ingest']
    if not ingest['fetched']:
        click.echo(f"No new trends ({ingest['reason']})")
        return
    click.echo(f"Imported trends: {ingest['created']} new, {ingest['updated']} refreshed")


@click.command('reset-failed-jobs')
@with_appcontext
def reset_failed_jobs():
    """Send today's failed jobs back to pending (bounded by MAX_JOB_RETRIES)"""
    try:
        result = _driver().reset_failed_jobs()
    except GenerationError as e:
        click.echo(f"Error resetting failed jobs: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"Reset {result['reset']} failed jobs, {result['skipped']} at retry limit")


@click.command('reset-stuck-job')
@click.argument('position', type=int)
@with_appcontext
def reset_stuck_job(position):
    """Reset today's generating job at POSITION back to pending"""
    try:
        result = _driver().reset_stuck_job(position)
    except GenerationError as e:
        click.echo(f"Could not reset job #{position}: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"Job #{position} ({result['job']['id']}) is pending again")


@click.command('generation-status')
@with_appcontext
def generation_status():
    """Show today's plan, quota usage and run state"""
    _echo_json(_driver().get_status())


@click.command('prune-quota')
@with_appcontext
def prune_quota():
    """Delete expired quota buckets and unreferenced old trends"""
    try:
        result = _driver().run_retention_cleanup()
    except GenerationError as e:
        click.echo(f"Error during cleanup: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"Pruned {result['quota_buckets_pruned']} quota buckets, "
               f"deleted {result['trends_deleted']} trends")


def init_commands(app):
    app.cli.add_command(generation_tick)
    app.cli.add_command(refresh_plan)
    app.cli.add_command(import_trends)
    app.cli.add_command(reset_failed_jobs)
    app.cli.add_command(reset_stuck_job)
    app.cli.add_command(generation_status)
    app.cli.add_command(prune_quota)
