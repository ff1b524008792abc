#!/usr/bin/env python3
"""Operator console for the risk governor.

Inspect the persisted risk ledger, toggle the kill-switch, force a daily
reset, reconcile exposure with the venue and browse the audit trail.

Usage:
    python scripts/risk_console.py status
    python scripts/risk_console.py kill --reason "Venue returning stale prices"
    python scripts/risk_console.py resume
    python scripts/risk_console.py reset
    python scripts/risk_console.py reconcile
    python scripts/risk_console.py audit --limit 20 --type kill_switch
    python scripts/risk_console.py serve
"""

import sys
import time
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.text import Text

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.api.risk_api import RiskAPI
from src.orchestration.scheduler import GovernanceScheduler
from src.risk import audit as audit_events
from src.utils.config import load_governor_config
from src.utils.exceptions import GovernorError
from src.utils.logging import setup_logging


console = Console()


def build_api(config_file: Optional[str]) -> RiskAPI:
    """Load configuration, set up logging and create an initialized RiskAPI."""
    config = load_governor_config(config_file)
    setup_logging(
        level=config.get("logging.level", "INFO"),
        log_file=config.get("logging.file"),
        max_bytes=config.get("logging.max_bytes", 10 * 1024 * 1024),
        backup_count=config.get("logging.backup_count", 30),
    )
    api = RiskAPI.from_config(config)
    api.initialize(reconcile=False)
    return api


def create_status_table(api: RiskAPI) -> Table:
    """Create risk status summary table."""
    summary = api.get_summary()

    table = Table(title="Risk Ledger", show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    pnl = summary["daily_pnl"]
    table.add_row("Daily P&L", Text(f"{pnl:+,.2f} USD", style="green" if pnl >= 0 else "red"))
    table.add_row("Loss Budget Left", f"{summary['available_risk_budget']:,.2f} USD")
    table.add_row("Open Positions", f"{summary['open_position_count']}/{summary['limits']['max_open_positions']}")
    table.add_row("Total Exposure", f"{summary['total_exposure']:,.2f} USD")
    table.add_row("Last Reset", summary["last_reset_at"].strftime("%Y-%m-%d %H:%M:%S UTC"))

    table.add_row("", "")
    active = summary["kill_switch_active"]
    table.add_row(
        "Kill-Switch",
        Text("ACTIVE" if active else "off", style="bold red" if active else "green"),
    )
    if active:
        table.add_row("Reason", summary["kill_switch_reason"] or "Unknown")
    table.add_row(
        "Trading Allowed",
        Text("yes" if summary["trading_allowed"] else "NO", style="green" if summary["trading_allowed"] else "red"),
    )

    if summary["persist_failures"] or summary["audit_failures"]:
        table.add_row("", "")
        table.add_row("Persist Failures", Text(str(summary["persist_failures"]), style="yellow"))
        table.add_row("Audit Failures", Text(str(summary["audit_failures"]), style="yellow"))

    return table


def create_exposure_table(api: RiskAPI) -> Table:
    """Create per-market exposure table."""
    summary = api.get_summary()
    cap = summary["limits"]["max_exposure_per_market_usd"]

    table = Table(title="Exposure per Market", show_header=True, header_style="bold magenta")
    table.add_column("Market", style="cyan")
    table.add_column("Exposure", justify="right")
    table.add_column("Cap Used", justify="right")

    for market_id, exposure in sorted(summary["exposure_per_market"].items()):
        used = exposure / cap if cap else 0.0
        style = "green" if used < 0.8 else "yellow" if used <= 1.0 else "red"
        table.add_row(market_id, f"{exposure:,.2f}", Text(f"{used:.0%}", style=style))

    return table


@click.group()
@click.option("--config", "config_file", default=None, help="Path to YAML config (default: config/default.yaml)")
@click.pass_context
def cli(ctx, config_file: Optional[str]):
    """Risk governor operator console."""
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file


@cli.command()
@click.pass_context
def status(ctx):
    """Show ledger, kill-switch and exposure."""
    try:
        api = build_api(ctx.obj["config_file"])
        console.print(create_status_table(api))
        console.print(create_exposure_table(api))
        api.shutdown()
    except GovernorError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        sys.exit(1)


@cli.command()
@click.option("--reason", "-r", default="Manually activated", help="Why trading is halted")
@click.pass_context
def kill(ctx, reason: str):
    """Activate the kill-switch."""
    api = build_api(ctx.obj["config_file"])
    api.activate_kill_switch(reason, actor=audit_events.OPERATOR)
    console.print(f"[bold red]Kill-switch ACTIVATED[/bold red] ({reason})")
    api.shutdown()


@cli.command()
@click.pass_context
def resume(ctx):
    """Deactivate the kill-switch."""
    api = build_api(ctx.obj["config_file"])
    api.deactivate_kill_switch(actor=audit_events.OPERATOR)
    console.print("[bold green]Kill-switch deactivated[/bold green]")
    api.shutdown()


@cli.command()
@click.confirmation_option(prompt="Zero daily P&L and clear the kill-switch?")
@click.pass_context
def reset(ctx):
    """Force a daily reset."""
    api = build_api(ctx.obj["config_file"])
    ledger = api.reset_daily(actor=audit_events.OPERATOR)
    console.print(f"[green]Daily reset done at {ledger.last_reset_at:%Y-%m-%d %H:%M:%S} UTC[/green]")
    api.shutdown()


@cli.command()
@click.option("--check", is_flag=True, help="Only report whether a sync is needed")
@click.pass_context
def reconcile(ctx, check: bool):
    """Reconcile ledger exposure with the venue."""
    api = build_api(ctx.obj["config_file"])

    if check:
        result = api.check_sync_needed()
        if result.needed:
            console.print(f"[yellow]Sync needed:[/yellow] {result.reason}")
        else:
            console.print(f"[green]In sync[/green] ({result.reason or f'{result.ledger_positions} positions'})")
    else:
        result = api.reconcile(actor=audit_events.OPERATOR)
        if result.synced:
            console.print(
                f"[green]Reconciled:[/green] {result.open_positions} positions, "
                f"{result.total_exposure:,.2f} USD exposure"
            )
            console.print(create_exposure_table(api))
        else:
            console.print(f"[bold red]Not synced:[/bold red] {result.reason}")

    api.shutdown()


@cli.command()
@click.option("--limit", "-l", default=20, help="Number of entries to show")
@click.option("--type", "event_type", default=None, help="Filter by event type (e.g. kill_switch)")
@click.pass_context
def audit(ctx, limit: int, event_type: Optional[str]):
    """Show the most recent audit entries."""
    api = build_api(ctx.obj["config_file"])
    df = api.format_audit_entries(api.recent_audit_entries(limit=limit, event_type=event_type))

    if df.empty:
        console.print("[yellow]No audit entries.[/yellow]")
        api.shutdown()
        return

    table = Table(title="Audit Trail", show_header=True, header_style="bold magenta")
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Type", style="cyan")
    table.add_column("Actor")
    table.add_column("Action")

    for timestamp, row in df.iterrows():
        table.add_row(
            timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            row["event_type"],
            row["actor"],
            row["action"],
        )
    console.print(table)
    api.shutdown()


@cli.command()
@click.pass_context
def serve(ctx):
    """Run the daily reset and periodic reconciliation until Ctrl+C."""
    api = build_api(ctx.obj["config_file"])
    settings = api.config.section("scheduler")

    scheduler = GovernanceScheduler(settings)
    scheduler.schedule_daily_reset(
        lambda: api.reset_daily(actor=audit_events.SCHEDULER),
        hour=settings.get("daily_reset_hour", 0),
        minute=settings.get("daily_reset_minute", 0),
    )
    if api.reconciler is not None:
        scheduler.schedule_reconciliation(
            lambda: api.reconcile(actor=audit_events.SCHEDULER),
            minutes=settings.get("reconcile_interval_minutes", 15),
        )
        api.reconcile(actor=audit_events.SCHEDULER)

    scheduler.start()
    console.print("[bold green]Governance scheduler running. Press Ctrl+C to exit.[/bold green]")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping scheduler.[/yellow]")
    finally:
        scheduler.stop()
        api.shutdown()


if __name__ == "__main__":
    cli()
