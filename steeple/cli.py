"""Command-line interface for Steeple."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path

import click
from dateutil import tz

from steeple.config import Settings
from steeple.errors import ConfigurationError, SteepleError
from steeple.messaging import build_dispatchers
from steeple.models import describe_rule, parse_instant
from steeple.recurrence import expand, next_occurrence, occurrences_for
from steeple.report import publish
from steeple.scheduler import ReminderScheduler, reminder_stats
from steeple.store import DataStore
from steeple.templating import format_date, format_time, preview, unknown_tokens

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s — %(message)s"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(format=LOG_FORMAT, level=level)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _build_backend(backend: str, settings: Settings):
    if backend == "supabase":
        from steeple.supabase import SupabaseClient, SupabaseStore

        return SupabaseStore(SupabaseClient.from_settings(settings), settings.organization_id)
    return DataStore(data_dir=settings.data_dir, organization_id=settings.organization_id)


def _now(value: str | None) -> datetime:
    if not value:
        return datetime.now(tz.UTC)
    try:
        return parse_instant(value)
    except ConfigurationError as exc:
        raise click.BadParameter(str(exc), param_hint="--now") from exc


def _load_definitions(backend):
    """Load series and reminders, reporting rows that failed validation."""
    series, series_errors = backend.load_series()
    configs, config_errors = backend.load_reminders()
    for exc in series_errors + config_errors:
        click.echo(f"  skipped invalid row: {exc}", err=True)
    return series, configs


def _when(value: datetime, settings: Settings) -> str:
    return f"{format_date(value, settings.tz)} {format_time(value, settings.tz)}"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option(
    "--data-dir",
    type=click.Path(path_type=Path),
    default=None,
    envvar="STEEPLE_DATA_DIR",
    help="Directory for JSON data files (default: ./data).",
)
@click.option(
    "--timezone",
    "timezone_name",
    default=None,
    envvar="STEEPLE_TIMEZONE",
    help="Organization timezone used to render reminders (default: UTC).",
)
@click.option(
    "--backend",
    type=click.Choice(["json", "supabase"]),
    default="json",
    envvar="STEEPLE_BACKEND",
    show_default=True,
    help="Where series, reminders and the dispatch log live.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    data_dir: Path | None,
    timezone_name: str | None,
    backend: str,
) -> None:
    """Steeple — recurring events and event reminders."""
    _setup_logging(verbose)
    try:
        settings = Settings.from_env().with_overrides(data_dir=data_dir, timezone=timezone_name)
        store = _build_backend(backend, settings)
    except SteepleError as exc:
        raise click.ClickException(str(exc)) from exc
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["store"] = store


@cli.command("expand")
@click.argument("series_id")
@click.option("--days", type=int, default=None, help="Days to expand (default: lookahead).")
@click.option("--now", "now_value", default=None, help="Window start as ISO timestamp.")
@click.pass_context
def expand_cmd(ctx: click.Context, series_id: str, days: int | None, now_value: str | None) -> None:
    """List the occurrences of one series."""
    settings: Settings = ctx.obj["settings"]
    series_list, _configs = _load_definitions(ctx.obj["store"])
    series = next((s for s in series_list if s.id == series_id), None)
    if series is None:
        raise click.ClickException(f"Unknown series: {series_id}")

    start = _now(now_value)
    end = start + timedelta(days=days or settings.lookahead_days)
    click.echo(f"{series.title} ({describe_rule(series.rule)})")
    count = 0
    for occurrence in expand(series, start, end):
        click.echo(f"  {_when(occurrence.start, settings)}  {occurrence.occurrence_id}")
        count += 1
    click.echo(f"{count} occurrence(s).")


@cli.command("next")
@click.option("--now", "now_value", default=None, help="Reference time as ISO timestamp.")
@click.pass_context
def next_cmd(ctx: click.Context, now_value: str | None) -> None:
    """Show the next occurrence of every series."""
    settings: Settings = ctx.obj["settings"]
    series_list, _configs = _load_definitions(ctx.obj["store"])
    now = _now(now_value)

    click.echo(f"{'Series':<30} {'Next':<22} {'Repeats'}")
    click.echo(f"{'-' * 30} {'-' * 22} {'-' * 20}")
    for series in sorted(series_list, key=lambda s: s.title.lower()):
        occurrence = next_occurrence(series, now)
        when = _when(occurrence.start, settings) if occurrence else "(none)"
        click.echo(f"{series.title[:30]:<30} {when:<22} {describe_rule(series.rule)}")


@cli.command()
@click.option("--days", type=int, default=None, help="Days to materialize (default: lookahead).")
@click.option("--now", "now_value", default=None, help="Window start as ISO timestamp.")
@click.pass_context
def materialize(ctx: click.Context, days: int | None, now_value: str | None) -> None:
    """Upsert upcoming occurrences of every series into the datastore."""
    settings: Settings = ctx.obj["settings"]
    store = ctx.obj["store"]
    series_list, _configs = _load_definitions(store)
    now = _now(now_value)

    occurrences = []
    for series in series_list:
        occurrences.extend(occurrences_for(series, now, days or settings.lookahead_days))
    try:
        added, updated = store.upsert_occurrences(occurrences)
    except SteepleError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Materialized {len(occurrences)} occurrence(s) from {len(series_list)} series.")
    click.echo(f"  {added} added, {updated} updated.")

    if isinstance(store, DataStore):
        archived = store.archive_past_occurrences(now)
        click.echo(f"Archived {archived} past occurrence(s).")


def _scheduler(ctx: click.Context, dry_run: bool) -> ReminderScheduler:
    settings: Settings = ctx.obj["settings"]
    store = ctx.obj["store"]
    dispatchers = build_dispatchers(settings, dry_run=dry_run)
    if not dispatchers:
        click.echo("No message providers configured; every dispatch will fail.", err=True)
    return ReminderScheduler(store.dispatch_log, store.resolver(), dispatchers, settings)


@cli.command()
@click.option("--dry-run", is_flag=True, help="Log messages instead of sending them.")
@click.option("--now", "now_value", default=None, help="Tick time as ISO timestamp.")
@click.pass_context
def tick(ctx: click.Context, dry_run: bool, now_value: str | None) -> None:
    """Run one reminder pass: compute due reminders and dispatch them."""
    series_list, configs = _load_definitions(ctx.obj["store"])
    scheduler = _scheduler(ctx, dry_run)
    try:
        summary = scheduler.run_tick(series_list, configs, _now(now_value))
    except SteepleError as exc:
        raise click.ClickException(str(exc)) from exc

    for row in summary.results:
        line = f"  > {row['event']} [{row['config']}]: {row['sent']} sent, {row['failed']} failed, {row['skipped']} skipped"
        if "error" in row:
            line += f" (error: {row['error']})"
        click.echo(line)
    click.echo(
        f"\nDone. {summary.sent} sent, {summary.failed} failed, "
        f"{summary.skipped} skipped, {summary.cancelled} cancelled."
    )


@cli.command()
@click.option("--days", type=int, default=None, help="Days ahead to plan (default: lookahead).")
@click.option("--now", "now_value", default=None, help="Reference time as ISO timestamp.")
@click.pass_context
def plan(ctx: click.Context, days: int | None, now_value: str | None) -> None:
    """Record upcoming reminder dispatches as scheduled."""
    settings: Settings = ctx.obj["settings"]
    series_list, configs = _load_definitions(ctx.obj["store"])
    now = _now(now_value)
    occurrences = []
    for series in series_list:
        occurrences.extend(occurrences_for(series, now, days or settings.lookahead_days))
    planned = _scheduler(ctx, dry_run=True).plan(occurrences, configs, now)
    click.echo(f"Planned {planned} reminder dispatch(es).")


@cli.command()
@click.argument("config_id")
@click.pass_context
def deactivate(ctx: click.Context, config_id: str) -> None:
    """Deactivate a reminder and cancel its scheduled dispatches."""
    store = ctx.obj["store"]
    if not store.set_reminder_active(config_id, False):
        raise click.ClickException(f"Unknown reminder: {config_id}")
    _series, configs = _load_definitions(store)
    cancelled = _scheduler(ctx, dry_run=True).cancel_inactive(
        [c for c in configs if c.id == config_id]
    )
    click.echo(f"Deactivated {config_id}; cancelled {cancelled} scheduled dispatch(es).")


@cli.command("cancel-inactive")
@click.pass_context
def cancel_inactive(ctx: click.Context) -> None:
    """Cancel scheduled dispatches of every inactive reminder."""
    _series, configs = _load_definitions(ctx.obj["store"])
    cancelled = _scheduler(ctx, dry_run=True).cancel_inactive(configs)
    click.echo(f"Cancelled {cancelled} scheduled dispatch(es).")


def _next_target(ctx: click.Context, config_id: str, now: datetime):
    """Find a reminder config and the next occurrence it targets."""
    settings: Settings = ctx.obj["settings"]
    series_list, configs = _load_definitions(ctx.obj["store"])
    config = next((c for c in configs if c.id == config_id), None)
    if config is None:
        raise click.ClickException(f"Unknown reminder: {config_id}")

    for series in series_list:
        if config.series_id and series.id != config.series_id:
            continue
        for candidate in occurrences_for(series, now, settings.lookahead_days):
            if config.targets(candidate):
                return config, candidate
    raise click.ClickException(f"No upcoming occurrence for reminder {config_id}")


@cli.command("preview")
@click.argument("config_id")
@click.option("--now", "now_value", default=None, help="Reference time as ISO timestamp.")
@click.pass_context
def preview_cmd(ctx: click.Context, config_id: str, now_value: str | None) -> None:
    """Render a reminder's message for its next occurrence."""
    settings: Settings = ctx.obj["settings"]
    now = _now(now_value)
    config, occurrence = _next_target(ctx, config_id, now)

    click.echo(preview(config.message_template, occurrence, now=now, zone=settings.tz))
    for token in unknown_tokens(config.message_template):
        click.echo(f"warning: unknown placeholder {{{token}}}", err=True)
    try:
        count = _scheduler(ctx, dry_run=True).recipient_count(config, occurrence)
    except SteepleError as exc:
        click.echo(f"Recipients: unknown ({exc})")
    else:
        click.echo(f"Recipients: {count}")


@cli.command("test-send")
@click.argument("config_id")
@click.argument("address")
@click.option("--dry-run", is_flag=True, help="Log the message instead of sending it.")
@click.option("--now", "now_value", default=None, help="Reference time as ISO timestamp.")
@click.pass_context
def send_test_cmd(
    ctx: click.Context,
    config_id: str,
    address: str,
    dry_run: bool,
    now_value: str | None,
) -> None:
    """Send a reminder's message, marked [TEST], to ADDRESS."""
    now = _now(now_value)
    config, occurrence = _next_target(ctx, config_id, now)
    try:
        provider_id = _scheduler(ctx, dry_run).send_test(config, occurrence, address, now)
    except SteepleError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Sent test of {config_id} to {address} ({provider_id}).")


@cli.command()
@click.option("--series", "series_id", default=None, help="Limit to one series.")
@click.pass_context
def stats(ctx: click.Context, series_id: str | None) -> None:
    """Show reminder delivery statistics."""
    log = ctx.obj["store"].dispatch_log
    s = reminder_stats(log.all_records(), series_id=series_id, skips=log.skips())
    click.echo(f"Total dispatches: {s['total']}")
    click.echo(f"Sent:             {s['sent']}")
    click.echo(f"Failed:           {s['failed']}")
    click.echo(f"Scheduled:        {s['scheduled']}")
    click.echo(f"Cancelled:        {s['cancelled']}")
    click.echo(f"Skipped:          {s['skipped']}")
    click.echo(f"Late:             {s['late']}")
    click.echo(f"Delivery rate:    {s['delivery_rate']}%")
    for offset, count in s["timing_breakdown"].items():
        click.echo(f"  {offset} before: {count}")


@cli.command("publish")
@click.option(
    "--output-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory for Markdown output (default: ./output).",
)
@click.option("--now", "now_value", default=None, help="Reference time as ISO timestamp.")
@click.pass_context
def publish_cmd(ctx: click.Context, output_dir: Path | None, now_value: str | None) -> None:
    """Write AGENDA.md and REMINDERS.md."""
    settings: Settings = ctx.obj["settings"]
    store = ctx.obj["store"]
    series_list, configs = _load_definitions(store)
    now = _now(now_value)
    occurrences = []
    for series in series_list:
        occurrences.extend(occurrences_for(series, now, settings.lookahead_days))

    agenda_path, reminders_path = publish(
        occurrences,
        series_list,
        configs,
        store.dispatch_log.all_records(),
        now,
        output_dir=output_dir,
        zone=settings.tz,
    )
    click.echo(f"Published: {agenda_path} ({len(occurrences)} occurrences)")
    click.echo(f"Published: {reminders_path}")
