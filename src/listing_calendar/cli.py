from __future__ import annotations

from datetime import date
import logging

import typer
from rich import print
from sqlmodel import Session, select

from listing_calendar.block_service import block_period, list_calendar, unblock_dates
from listing_calendar.config import RuntimeSettings, list_settings, load_runtime_settings, upsert_setting
from listing_calendar.conflicts import analyze_conflicts
from listing_calendar.connectors.ics_feed import IcsFeedConnector, redact_url
from listing_calendar.db import get_engine, initialize_database, unit_of_work
from listing_calendar.errors import NotFoundError, TransactionError
from listing_calendar.export_service import LocalFeedPublisher, regenerate_export
from listing_calendar.feed_registry import (
    add_subscription,
    list_subscriptions,
    remove_subscription,
    toggle_subscription,
)
from listing_calendar.models import Property
from listing_calendar.sync_service import sync_all, sync_all_properties
from listing_calendar.timeutil import normalize_to_day, now_iso

app = typer.Typer(
    name="lcal",
    help="Listing availability calendar CLI.",
    no_args_is_help=True,
)
property_app = typer.Typer(help="Manage properties (reference data).")
calendar_app = typer.Typer(help="Block, unblock and export property calendars.")
feed_app = typer.Typer(help="Manage external iCal feed subscriptions.")
sync_app = typer.Typer(help="Sync external feeds across properties.")
config_app = typer.Typer(help="Manage calendar settings.")
app.add_typer(property_app, name="property")
app.add_typer(calendar_app, name="calendar")
app.add_typer(feed_app, name="feed")
app.add_typer(sync_app, name="sync")
app.add_typer(config_app, name="config")


def _parse_day(value: str, option_name: str) -> date:
    try:
        return normalize_to_day(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid {option_name}: {value}. Expected YYYY-MM-DD.") from exc


def _publisher(settings: RuntimeSettings) -> LocalFeedPublisher:
    return LocalFeedPublisher(export_dir=settings.export_dir, url_base=settings.export_url_base)


def _connector(settings: RuntimeSettings) -> IcsFeedConnector:
    return IcsFeedConnector(
        timeout_sec=settings.feed_timeout_sec,
        lookback_days=settings.feed_lookback_days,
        lookahead_days=settings.feed_lookahead_days,
    )


def _fail(exc: Exception) -> typer.Exit:
    print(f"[red]{exc}[/red]")
    return typer.Exit(code=1)


@app.callback()
def root(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log sync and export activity."),
) -> None:
    """Listing availability calendar CLI entrypoint."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.command()
def init() -> None:
    """Initialize DB, run migrations, and seed defaults."""
    db_path = initialize_database()
    print(f"[green]Initialized database:[/green] {db_path}")


# --- Property commands ---


@property_app.command("add")
def property_add(number: str = typer.Argument(..., help="Property number, e.g. A-101.")) -> None:
    """Add a property. Idempotent: returns existing record if the number matches."""
    trimmed = number.strip()
    if not trimmed:
        raise typer.BadParameter("Property number must not be empty.")

    with Session(get_engine(ensure_directory=True)) as session:
        existing = session.exec(select(Property).where(Property.property_number == trimmed)).first()
        if existing is not None:
            typer.echo(f'id={existing.id} number="{existing.property_number}"')
            return

        prop = Property(property_number=trimmed)
        session.add(prop)
        session.commit()
        session.refresh(prop)
        typer.echo(f'id={prop.id} number="{prop.property_number}"')


@property_app.command("list")
def property_list() -> None:
    """List active properties."""
    with Session(get_engine(ensure_directory=True)) as session:
        rows = session.exec(
            select(Property).where(Property.deleted_at.is_(None)).order_by(Property.id)
        ).all()

    if not rows:
        typer.echo("No properties.")
        return

    for prop in rows:
        typer.echo(f'id={prop.id} number="{prop.property_number}"')


# --- Calendar commands ---


@calendar_app.command("block")
def calendar_block(
    property_id: int = typer.Argument(..., help="Property id."),
    start: str = typer.Option(..., "--start", help="First blocked day, YYYY-MM-DD."),
    end: str = typer.Option(..., "--end", help="Last blocked day, YYYY-MM-DD (inclusive)."),
    reason: str | None = typer.Option(None, "--reason", help="Shown as the event title in the export."),
) -> None:
    """Block every day of a period."""
    start_day = _parse_day(start, "--start")
    end_day = _parse_day(end, "--end")

    with Session(get_engine(ensure_directory=True)) as session:
        settings = load_runtime_settings(session)
        try:
            result = block_period(
                session,
                property_id,
                start_day,
                end_day,
                reason,
                publisher=_publisher(settings),
                timezone_name=settings.export_timezone,
            )
        except (NotFoundError, TransactionError) as exc:
            raise _fail(exc) from exc
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc

    print(
        f"[green]Blocked {len(result.blocked_days)} day(s)[/green] "
        f"{start_day.isoformat()}..{end_day.isoformat()} export={result.export_url or '-'}"
    )


@calendar_app.command("unblock")
def calendar_unblock(
    property_id: int = typer.Argument(..., help="Property id."),
    dates: list[str] = typer.Argument(..., help="Days to unblock, YYYY-MM-DD or ISO timestamps."),
) -> None:
    """Remove the given days from the blocked calendar."""
    with Session(get_engine(ensure_directory=True)) as session:
        settings = load_runtime_settings(session)
        try:
            result = unblock_dates(
                session,
                property_id,
                dates,
                publisher=_publisher(settings),
                timezone_name=settings.export_timezone,
            )
        except (NotFoundError, TransactionError) as exc:
            raise _fail(exc) from exc
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc

    print(f"[green]Unblocked {result.removed_count} day(s).[/green] export={result.export_url or '-'}")


@calendar_app.command("show")
def calendar_show(
    property_id: int = typer.Argument(..., help="Property id."),
    from_date: str | None = typer.Option(None, "--from", help="Only days on or after YYYY-MM-DD."),
) -> None:
    """Show blocked days, subscriptions and the current export."""
    cutoff = _parse_day(from_date, "--from") if from_date is not None else None

    with Session(get_engine(ensure_directory=True)) as session:
        try:
            view = list_calendar(session, property_id, from_date=cutoff)
        except NotFoundError as exc:
            raise _fail(exc) from exc

        names = {subscription.id: subscription.calendar_name for subscription in view.subscriptions}
        if not view.blocked:
            print("[yellow]No blocked days.[/yellow]")
        else:
            print(f"[bold]Blocked days for property {property_id}:[/bold]")
        for row in view.blocked:
            source = "manual" if row.is_manual else names.get(row.source_calendar_id, f"#{row.source_calendar_id}")
            flags = "".join(
                flag for flag, enabled in (("[in]", row.is_check_in), ("[out]", row.is_check_out)) if enabled
            )
            typer.echo(f"- {row.blocked_date.isoformat()} | {row.reason or '-'} | {source} {flags}".rstrip())

        if view.export is not None:
            typer.echo(
                f"export={view.export.url} days={view.export.total_blocked_days} "
                f"updated_at={view.export.updated_at}"
            )


@calendar_app.command("export")
def calendar_export(property_id: int = typer.Argument(..., help="Property id.")) -> None:
    """Regenerate the outbound .ics feed from the stored blocked days."""
    with Session(get_engine(ensure_directory=True)) as session:
        settings = load_runtime_settings(session)
        try:
            with unit_of_work(session):
                artifact = regenerate_export(
                    session,
                    property_id,
                    publisher=_publisher(settings),
                    timezone_name=settings.export_timezone,
                )
                summary = None if artifact is None else (artifact.url, artifact.total_blocked_days)
        except (NotFoundError, TransactionError) as exc:
            raise _fail(exc) from exc

    if summary is None:
        print("[yellow]No blocked days; export removed.[/yellow]")
        return
    print(f"[green]Export written.[/green] url={summary[0]} days={summary[1]}")


# --- Feed commands ---


@feed_app.command("add")
def feed_add(
    property_id: int = typer.Argument(..., help="Property id."),
    name: str = typer.Option(..., "--name", help="Display name, e.g. Airbnb."),
    url: str = typer.Option(..., "--url", help="iCal feed URL (http, https or webcal)."),
) -> None:
    """Subscribe to an external feed after checking that it parses."""
    with Session(get_engine(ensure_directory=True)) as session:
        settings = load_runtime_settings(session)
        try:
            result = add_subscription(session, property_id, name, url, connector=_connector(settings))
        except (NotFoundError, TransactionError) as exc:
            raise _fail(exc) from exc
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc

    print(
        f"[green]Feed added.[/green] id={result.subscription_id} "
        f"events={result.events_count} url={redact_url(result.feed_url)}"
    )


@feed_app.command("list")
def feed_list(property_id: int = typer.Argument(..., help="Property id.")) -> None:
    """List a property's feed subscriptions."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            rows = list_subscriptions(session, property_id)
        except NotFoundError as exc:
            raise _fail(exc) from exc

    if not rows:
        typer.echo("No feeds.")
        return

    for row in rows:
        status = "enabled" if row.is_enabled else "disabled"
        typer.echo(
            f'id={row.id} name="{row.calendar_name}" {status} events={row.total_events} '
            f"last_sync_at={row.last_sync_at or '-'} error={row.last_sync_error or '-'} "
            f"url={redact_url(row.feed_url)}"
        )


@feed_app.command("toggle")
def feed_toggle(
    subscription_id: int = typer.Argument(..., help="Feed subscription id."),
    enabled: bool = typer.Option(..., "--enable/--disable", help="New state."),
    property_id: int | None = typer.Option(None, "--property", help="Fail unless the feed belongs here."),
) -> None:
    """Enable or disable a feed without touching its synced days."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            row = toggle_subscription(session, subscription_id, enabled, property_id=property_id)
        except (NotFoundError, TransactionError) as exc:
            raise _fail(exc) from exc
        status = "enabled" if row.is_enabled else "disabled"

    print(f"[green]Feed {subscription_id} {status}.[/green]")


@feed_app.command("remove")
def feed_remove(
    property_id: int = typer.Argument(..., help="Property id."),
    subscription_id: int = typer.Argument(..., help="Feed subscription id."),
    remove_dates: bool = typer.Option(False, "--remove-dates", help="Also delete the days this feed synced."),
) -> None:
    """Delete a feed subscription."""
    with Session(get_engine(ensure_directory=True)) as session:
        settings = load_runtime_settings(session)
        try:
            result = remove_subscription(
                session,
                property_id,
                subscription_id,
                remove_dates,
                publisher=_publisher(settings),
                timezone_name=settings.export_timezone,
            )
        except (NotFoundError, TransactionError) as exc:
            raise _fail(exc) from exc

    print(
        f"[green]Feed {subscription_id} removed.[/green] "
        f"removed_dates={result.removed_dates} kept_as_manual={result.detached_dates}"
    )


@feed_app.command("sync")
def feed_sync(
    property_id: int = typer.Argument(..., help="Property id."),
    retries: int | None = typer.Option(None, "--retries", help="Retry attempts per feed (default from settings)."),
    backoff_sec: int | None = typer.Option(None, "--backoff-sec", help="Base backoff in seconds."),
    parallel: bool | None = typer.Option(None, "--parallel/--sequential", help="Fetch feeds concurrently."),
) -> None:
    """Sync every enabled feed of one property."""
    with Session(get_engine(ensure_directory=True)) as session:
        settings = load_runtime_settings(session)
        try:
            report = sync_all(
                session,
                property_id,
                connector=_connector(settings),
                publisher=_publisher(settings),
                retries=settings.feed_retries if retries is None else retries,
                backoff_sec=settings.feed_backoff_sec if backoff_sec is None else backoff_sec,
                parallel=settings.sync_parallel if parallel is None else parallel,
                timezone_name=settings.export_timezone,
            )
        except (NotFoundError, TransactionError) as exc:
            raise _fail(exc) from exc
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc

    status = "ok" if report.success else "degraded"
    print(
        f"[green]Feed sync complete.[/green] status={status} synced={report.synced_count} "
        f"events={report.total_events} export={report.export_url or '-'}"
    )
    for error in report.errors:
        print(f"[red]- {error}[/red]")
    if not report.success:
        raise typer.Exit(code=2)


@feed_app.command("analyze")
def feed_analyze(
    property_id: int = typer.Argument(..., help="Property id."),
    calendar_ids: list[int] = typer.Argument(..., help="Feed subscription ids to compare."),
    include_manual: bool = typer.Option(False, "--include-manual", help="Compare manual blocks too."),
) -> None:
    """Report days claimed by more than one feed, from the last synced data."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            report = analyze_conflicts(session, property_id, calendar_ids, include_manual=include_manual)
        except NotFoundError as exc:
            raise _fail(exc) from exc
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc

    if not report.has_conflicts:
        print(f"[green]No conflicts across {report.calendars_analyzed} calendar(s).[/green]")
        return

    print(
        f"[bold]{report.contested_days} contested day(s) across "
        f"{report.calendars_analyzed} calendar(s):[/bold]"
    )
    for run in report.contested_runs:
        typer.echo(f"- {run.start.isoformat()}..{run.end.isoformat()} | {', '.join(run.calendars)}")


# --- Fleet sync ---


@sync_app.command("all")
def sync_all_command(
    retries: int | None = typer.Option(None, "--retries", help="Retry attempts per feed (default from settings)."),
    backoff_sec: int | None = typer.Option(None, "--backoff-sec", help="Base backoff in seconds."),
    parallel: bool | None = typer.Option(None, "--parallel/--sequential", help="Fetch feeds concurrently."),
) -> None:
    """Sync every property that has an enabled feed. Exit 2 on partial failure."""
    engine = get_engine(ensure_directory=True)
    with Session(engine) as session:
        settings = load_runtime_settings(session)

    try:
        outcome = sync_all_properties(
            lambda: Session(engine),
            connector=_connector(settings),
            publisher=_publisher(settings),
            retries=settings.feed_retries if retries is None else retries,
            backoff_sec=settings.feed_backoff_sec if backoff_sec is None else backoff_sec,
            parallel=settings.sync_parallel if parallel is None else parallel,
            timezone_name=settings.export_timezone,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    status = {0: "ok", 2: "degraded", 1: "failed"}[outcome.exit_code]
    print(
        f"[green]Sync complete.[/green] status={status} properties={len(outcome.properties)} "
        f"finished_at={now_iso()}"
    )
    for item in outcome.properties:
        line = (
            f"- property={item.property_id} synced={item.synced_count} "
            f"failed={item.failed_count} events={item.total_events}"
        )
        if item.reason:
            line += f" reason={item.reason}"
        typer.echo(line)
    if outcome.exit_code != 0:
        raise typer.Exit(code=outcome.exit_code)


# --- Config commands ---


@config_app.command("show")
def config_show() -> None:
    """Print all settings as key=value, sorted by key."""
    with Session(get_engine(ensure_directory=True)) as session:
        settings = list_settings(session)

    for setting in settings:
        typer.echo(f"{setting.key}={setting.value}")


@config_app.command("set")
def config_set(key: str, value: str) -> None:
    """Validate and upsert a setting."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            setting = upsert_setting(session, key=key, value=value)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc

    typer.echo(f"{setting.key}={setting.value}")


def main() -> None:
    app()
