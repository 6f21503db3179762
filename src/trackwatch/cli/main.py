"""CLI entry point: the `tw` command."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from trackwatch.core.base import Cookie, LogRecord, SourceTag
from trackwatch.core.config import MonitorConfig, get_monitor_config
from trackwatch.core.counters import CounterAggregator
from trackwatch.core.host import (
    CookieChanged,
    CookieJar,
    HostEvent,
    LocalChannel,
    LoggingAlertSink,
    parse_host_event,
)
from trackwatch.core.logstore import TrackingLogStore
from trackwatch.core.monitor import Monitor, SiteAssessment
from trackwatch.core.paths import get_state_dir
from trackwatch.core.scoring import (
    compute_risk_score,
    get_risk_color,
    get_risk_label,
    should_block,
)
from trackwatch.core.sessions import SessionHistory
from trackwatch.core.storage import Storage, StorageError, load_settings, open_storage
from trackwatch.probes.location import fetch_location

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger("trackwatch.cli")

_cookie_list: TypeAdapter[list[Cookie]] = TypeAdapter(list[Cookie])

SOURCE_STYLES = {
    SourceTag.NETWORK_TRACKING: "red",
    SourceTag.CACHE_TRACKING: "yellow",
    SourceTag.ON_CHANGED: "cyan",
    SourceTag.ON_COMPLETED: "cyan",
    SourceTag.LOCAL_STORAGE: "magenta",
    SourceTag.BEHAVIOR_TRACKING: "blue",
    SourceTag.CROSS_SITE_TRACKING: "red bold",
    SourceTag.DEVICE_LOCATION: "dim",
    SourceTag.DEVICE_FINGERPRINT: "dim",
    SourceTag.DNS_DETECTION: "dim",
}


def _run_async(coro: Any) -> Any:
    """Run an async coroutine from sync Click commands."""
    return asyncio.run(coro)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _config(ctx: click.Context) -> MonitorConfig:
    return ctx.obj["config"]


def _storage(ctx: click.Context) -> Storage:
    return open_storage(get_state_dir(_config(ctx).data_dir))


def _load_cookies(path: str) -> list[Cookie]:
    """Read a JSON array of cookies (host cookie-store shape, camelCase keys)."""
    try:
        raw = json.loads(Path(path).read_text())
        return _cookie_list.validate_python(raw)
    except (json.JSONDecodeError, ValidationError) as e:
        console.print(f"[red]Invalid cookie file {path}: {e}[/red]")
        raise SystemExit(1) from e


def _describe(record: LogRecord) -> str:
    if record.cookie_name:
        return record.cookie_name
    if record.error:
        return f"error: {record.error}"
    if record.url:
        return record.url
    if record.data is not None:
        return json.dumps(record.data)
    return ""


def _render_assessment(assessment: SiteAssessment) -> None:
    console.print(
        Panel(
            f"[bold]{assessment.domain}[/bold]\n"
            f"Cookies: {assessment.cookie_count}\n"
            f"Risk: [{assessment.color}]{assessment.score}/10 ({assessment.label})"
            f"[/{assessment.color}]",
            style="blue",
        )
    )
    if assessment.high_risk:
        console.print("[red]High-risk cookies detected on this site.[/red]")


@click.group()
@click.version_option(package_name="trackwatch")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to a config.toml (defaults to the standard locations).")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """tw: TrackWatch. Observe trackers, score cookie risk, keep a tracking log."""
    config = get_monitor_config(Path(config_path) if config_path else None)
    _setup_logging("DEBUG" if verbose else config.log_level)
    ctx.obj = {"config": config}


@cli.command()
@click.argument("cookie_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--domain", "-d", required=True, help="Site domain the cookies were read on.")
@click.option("--format", "output_format", type=click.Choice(["rich", "json"]), default="rich")
@click.pass_context
def score(ctx: click.Context, cookie_file: str, domain: str, output_format: str) -> None:
    """Score a JSON cookie list as seen from DOMAIN (0 = harmless, 10 = worst)."""
    cookies = _load_cookies(cookie_file)
    config = _config(ctx)
    weights = config.risk_weights
    if weights is None:
        weights = _run_async(load_settings(_storage(ctx))).risk_weights

    value = compute_risk_score(cookies, domain.removeprefix("www."), weights)

    if output_format == "json":
        click.echo(json.dumps({
            "domain": domain,
            "score": value,
            "label": get_risk_label(value),
            "cookies": len(cookies),
            "block": should_block(value),
        }, indent=2))
        return

    color = get_risk_color(value)
    console.print(
        f"[bold]{domain}[/bold] ({len(cookies)} cookies): "
        f"[{color}]{value}/10 ({get_risk_label(value)})[/{color}]"
    )
    if should_block(value):
        console.print("[red]Above the blocking threshold.[/red]")


@cli.command()
@click.option("--limit", "-n", type=int, default=50, show_default=True, help="Newest entries to show.")
@click.option("--source", "-s", type=click.Choice([t.value for t in SourceTag]), default=None)
@click.option("--format", "output_format", type=click.Choice(["rich", "json"]), default="rich")
@click.pass_context
def logs(ctx: click.Context, limit: int, source: str | None, output_format: str) -> None:
    """Show the tracking log, newest first."""
    store = TrackingLogStore(_storage(ctx).local)
    # Filtering happens after the read so --limit counts matching entries.
    records = _run_async(store.read())
    if source:
        records = [r for r in records if r.source == source]
    records = records[:limit]

    if output_format == "json":
        click.echo(json.dumps([r.to_store() for r in records], indent=2))
        return

    if not records:
        console.print("[dim]No tracking logs recorded.[/dim]")
        return

    table = Table(title="Tracking Logs")
    table.add_column("Time", style="dim")
    table.add_column("Source")
    table.add_column("Domain")
    table.add_column("Detail", overflow="fold")
    for record in records:
        style = SOURCE_STYLES.get(record.source, "")
        table.add_row(
            str(record.timestamp),
            f"[{style}]{record.source}[/{style}]" if style else str(record.source),
            record.domain or "",
            _describe(record),
        )
    console.print(table)


@cli.command()
@click.pass_context
def history(ctx: click.Context) -> None:
    """Show archived tab sessions, newest first."""
    sessions = _run_async(SessionHistory(_storage(ctx).sync).read())
    if not sessions:
        console.print("[dim]No sessions archived yet.[/dim]")
        return

    table = Table(title="Session History")
    table.add_column("Domain", style="bold")
    table.add_column("Opened", style="dim")
    table.add_column("Duration", justify="right")
    table.add_column("Cookies", justify="right")
    for session in sessions:
        seconds = (session.close_time - session.open_time) / 1000
        table.add_row(
            session.domain,
            str(session.open_time),
            f"{seconds:.0f}s",
            str(len(session.cookie_snapshot)),
        )
    console.print(table)


@cli.command()
@click.pass_context
def counters(ctx: click.Context) -> None:
    """Show cumulative cookie and tracker counts."""
    totals = _run_async(CounterAggregator(_storage(ctx).local).read())
    console.print(f"Cookies changed: [bold]{totals.cookie_count}[/bold]")
    console.print(f"Tracker cookies: [bold red]{totals.tracker_count}[/bold red]")


@cli.command()
@click.pass_context
def sweep(ctx: click.Context) -> None:
    """Drop log entries older than the retention window."""
    removed = _run_async(TrackingLogStore(_storage(ctx).local).sweep())
    console.print(f"[green]Removed {removed} expired entries.[/green]")


@cli.command()
@click.argument("target", type=click.Choice(["logs", "history"]))
@click.pass_context
def clear(ctx: click.Context, target: str) -> None:
    """Clear the tracking log or the session history."""
    storage = _storage(ctx)
    if target == "logs":
        _run_async(TrackingLogStore(storage.local).clear())
    else:
        _run_async(SessionHistory(storage.sync).clear())
    console.print(f"[green]Cleared {target}.[/green]")


@cli.command()
@click.argument("events_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def replay(ctx: click.Context, events_file: str) -> None:
    """Feed a JSONL recording of host events through the monitor."""
    storage = _storage(ctx)
    jar = CookieJar()
    alerts = LoggingAlertSink()
    monitor = Monitor(storage, jar, alerts, LocalChannel(), config=_config(ctx))

    async def _replay() -> tuple[int, int]:
        processed = skipped = 0
        async with monitor:
            with open(events_file) as f:
                for lineno, line in enumerate(f, 1):
                    if not line.strip():
                        continue
                    try:
                        event: HostEvent = parse_host_event(json.loads(line))
                    except ValueError as e:
                        logger.warning("Skipping line %d: %s", lineno, e)
                        skipped += 1
                        continue
                    if isinstance(event, CookieChanged):
                        jar.apply(event.change)
                    await monitor.dispatch(event)
                    processed += 1
        return processed, skipped

    try:
        processed, skipped = _run_async(_replay())
    except StorageError as e:
        console.print(f"[red]Storage error: {e}[/red]")
        sys.exit(1)

    console.print(Panel("[bold]Replay Summary[/bold]", style="blue"))
    console.print(f"Events processed: {processed}")
    if skipped:
        console.print(f"[yellow]Lines skipped: {skipped}[/yellow]")
    console.print(f"Batches flushed: {monitor.queue.flush_count}")
    console.print(f"Alerts raised: {len(alerts.alerts)}")
    for title, message in alerts.alerts:
        console.print(f"  [red]{title}[/red]: {message}")


@cli.command()
@click.argument("url")
@click.option("--cookies", "cookie_file", required=True,
              type=click.Path(exists=True, dir_okay=False), help="JSON cookie list for the site.")
@click.option("--remediate", is_flag=True, help="Remove the site's cookies when above the threshold.")
@click.option("--force", is_flag=True, help="With --remediate, remove regardless of score.")
@click.pass_context
def assess(ctx: click.Context, url: str, cookie_file: str, remediate: bool, force: bool) -> None:
    """Score the cookies URL exposes using the stored risk weights."""
    jar = CookieJar(_load_cookies(cookie_file))
    monitor = Monitor(_storage(ctx), jar, LoggingAlertSink(), LocalChannel(), config=_config(ctx))

    async def _assess() -> tuple[SiteAssessment, int | None]:
        assessment = await monitor.assess_site(url)
        removed = await monitor.remediate(url, force=force) if remediate else None
        return assessment, removed

    assessment, removed = _run_async(_assess())
    _render_assessment(assessment)
    if removed is not None:
        console.print(f"Removed {removed} cookies ({len(jar)} left).")


@cli.group()
def probe() -> None:
    """Run the device probes and record their results."""


@probe.command("location")
@click.pass_context
def probe_location(ctx: click.Context) -> None:
    """Look up what an IP geolocation service reveals about this device."""
    monitor = Monitor(
        _storage(ctx),
        CookieJar(),
        LoggingAlertSink(),
        LocalChannel(),
        config=_config(ctx),
        location_fetcher=fetch_location,
    )

    async def _locate() -> Any:
        location = await monitor.refresh_location()
        await monitor.stop()
        return location

    location = _run_async(_locate())
    if location is None:
        console.print("[red]Location lookup failed (see the tracking log).[/red]")
        sys.exit(1)

    table = Table(title="Device Location", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for field, value in location.to_store().items():
        table.add_row(field, str(value))
    console.print(table)


@probe.command("dns")
@click.argument("domain")
@click.pass_context
def probe_dns(ctx: click.Context, domain: str) -> None:
    """Detect the DNS resolver in use and what DOMAIN resolves to."""
    monitor = Monitor(
        _storage(ctx),
        CookieJar(),
        LoggingAlertSink(),
        LocalChannel(),
        config=_config(ctx),
    )

    async def _detect() -> Any:
        result = await monitor.detect_dns(domain)
        await monitor.stop()
        return result

    result = _run_async(_detect())
    console.print(f"[bold]DNS resolver:[/bold] {result.dns_servers}")
    console.print(f"[bold]{domain}:[/bold] {result.website_dns}")


if __name__ == "__main__":
    cli()
