"""HealClaw CLI application."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from healclaw import __version__
from healclaw.config import (
    DEFAULT_DB_FILE,
    ConfigError,
    create_default_config,
    load_config,
    load_reports,
    save_config,
)
from healclaw.core.history import HistoryStore
from healclaw.core.orchestrator import HealingOrchestrator
from healclaw.core.throttle import SafetyThrottle
from healclaw.core.workspace import WorkspaceManager
from healclaw.db import Database
from healclaw.github import GitHubHost
from healclaw.models import HealClawConfig, JobStatus, RunSummary
from healclaw.notify import NotificationDispatcher
from healclaw.openclaw import OpenClawFixAgent

# Initialize
app = typer.Typer(
    name="healclaw",
    help="HealClaw - automatic healing of CI/CD failures",
    no_args_is_help=True,
)
console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help="Path to config file")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Verbose output")


def setup_logging(verbose: bool = False, log_file: str | None = None, level: str = "INFO") -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else level

    # Console logging
    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    if log_file:
        logger.add(
            Path(log_file).expanduser(),
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function} - {message}",
            level=level,
            rotation="10 MB",
            retention=5,
        )


def _load(config_path: Optional[Path], verbose: bool) -> HealClawConfig:
    """Load config and configure logging from it."""
    setup_logging(verbose)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)
    setup_logging(verbose, config.logging.file, config.logging.level)
    return config


def _database(config: HealClawConfig) -> Database:
    if config.db_path:
        return Database(Path(config.db_path).expanduser())
    return Database(DEFAULT_DB_FILE)


def _status_style(status: str) -> str:
    if status in ("success", JobStatus.SUCCEEDED.value):
        return f"[green]{status}[/green]"
    if status in ("failed", JobStatus.FAILED.value):
        return f"[red]{status}[/red]"
    return f"[yellow]{status}[/yellow]"


def _print_summary(summary: RunSummary) -> None:
    table = Table(title="Healing Run")
    table.add_column("Job", style="cyan")
    table.add_column("Repository")
    table.add_column("Status")
    table.add_column("Detail")

    for outcome in summary.outcomes:
        job = outcome.job
        if job.status.is_skipped:
            detail = job.skip_reason or "-"
        elif job.result is not None:
            detail = escape(job.result.pull_request_url or job.result.error or "-")
        else:
            detail = "-"
        table.add_row(job.id, job.lock_key, _status_style(job.status.value), detail)

    console.print(table)
    console.print(
        f"\n[green]{summary.healed} healed[/green], [red]{summary.failed} failed[/red], "
        f"[yellow]{summary.skipped} skipped[/yellow] of {summary.total}"
    )


@app.command("run")
def run(
    reports_file: Path = typer.Argument(..., help="JSON or YAML file with error reports"),
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Heal the errors listed in a reports file."""
    config = _load(config_path, verbose)

    try:
        reports = load_reports(reports_file)
    except ConfigError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)

    if not reports:
        console.print("[yellow]No error reports to process[/yellow]")
        return

    summary = asyncio.run(_run(config, reports))
    _print_summary(summary)
    if summary.failed:
        raise typer.Exit(1)


async def _run(config: HealClawConfig, reports) -> RunSummary:
    db = _database(config)

    fix_agent = OpenClawFixAgent(config.openclaw) if config.openclaw.enabled else None
    host = None
    if config.github.enabled and GitHubHost.is_available():
        host = GitHubHost(config.github)
    elif config.github.enabled:
        logger.warning("git not found on PATH, running without a repository host")
    dispatcher = NotificationDispatcher(config.notify)

    orchestrator = HealingOrchestrator.from_config(
        config, db, fix_agent=fix_agent, host=host, dispatcher=dispatcher
    )
    try:
        return await orchestrator.execute_all(reports)
    finally:
        if fix_agent is not None:
            await fix_agent.close()
        if host is not None:
            await host.close()
        await dispatcher.close()


@app.command("status")
def status(
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Show leases, workspaces, throttle and history counters."""
    config = _load(config_path, verbose)
    db = _database(config)
    workspace = WorkspaceManager.from_config(config.workspace, db)
    throttle = SafetyThrottle.from_config(db, config.healing, config.safety)
    stats = HistoryStore(db).stats()
    throttle_stats = throttle.get_stats()

    console.print(f"[bold]HealClaw v{__version__}[/bold]")
    console.print(f"[dim]Workspaces:[/dim] {workspace.base_dir}")
    console.print(f"  {len(workspace.list_workspaces())} active workspace(s)")

    leases = workspace.lock_manager.provider.list_locks()
    if leases:
        table = Table(title="Repository Leases")
        table.add_column("Repository", style="cyan")
        table.add_column("Holder")
        table.add_column("Age", justify="right")
        for info in leases:
            table.add_row(info.key, info.holder_id or "-", f"{info.age_seconds:.0f}s")
        console.print(table)
    else:
        console.print("  No repository leases held")

    console.print(
        f"[dim]Throttle:[/dim] {throttle_stats['signatures']} signature(s) tracked, "
        f"cooldown {throttle_stats['cooldown_seconds']:.0f}s, "
        f"max {throttle_stats['max_attempts']} attempts"
    )
    console.print(
        f"[dim]History:[/dim] {stats['total']} attempt(s), "
        f"{stats['success_rate']:.0%} success"
    )


@app.command("history")
def history(
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Filter by repository"),
    signature: Optional[str] = typer.Option(None, "--signature", "-s", help="Filter by error signature"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of records to show"),
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Show recent healing outcomes."""
    config = _load(config_path, verbose)
    records = HistoryStore(_database(config)).query(
        signature=signature, repo_key=repo, limit=limit
    )

    if not records:
        console.print("[yellow]No healing history found[/yellow]")
        return

    table = Table(title="Healing History")
    table.add_column("Time")
    table.add_column("Repository", style="cyan")
    table.add_column("Signature")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Result")

    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M"),
            record.repo_key,
            record.signature,
            _status_style(record.status),
            f"{record.duration_ms / 1000:.1f}s",
            escape(record.pull_request_url or record.error or "-"),
        )

    console.print(table)


@app.command("analyze")
def analyze(
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Analyze healing history for patterns and recommendations."""
    config = _load(config_path, verbose)
    analysis = HistoryStore(_database(config)).analyze()

    if not analysis.total:
        console.print("[yellow]No healing history found. Nothing to analyze.[/yellow]")
        return

    console.print("[bold]Overall[/bold]")
    console.print(f"  Attempts:     {analysis.total}")
    console.print(f"  Successful:   {analysis.succeeded}")
    console.print(f"  Failed:       {analysis.failed}")
    console.print(f"  Success rate: {analysis.success_rate:.1%}")

    if analysis.avg_duration_seconds is not None:
        console.print("\n[bold]Healing time[/bold]")
        console.print(f"  Average: {analysis.avg_duration_seconds:.1f}s")
        console.print(f"  Fastest: {analysis.min_duration_seconds:.1f}s")
        console.print(f"  Slowest: {analysis.max_duration_seconds:.1f}s")

    for title, groups in (("By repository", analysis.by_repository), ("By platform", analysis.by_platform)):
        table = Table(title=title)
        table.add_column("Name", style="cyan")
        table.add_column("Attempts", justify="right")
        table.add_column("Success", justify="right")
        for name, stats in groups.items():
            table.add_row(name, str(stats.total), f"{stats.success_rate:.0%}")
        console.print(table)

    if analysis.by_strategy:
        console.print("\n[bold]By strategy[/bold]")
        for strategy, count in analysis.by_strategy.items():
            console.print(f"  {strategy}: {count}")

    if analysis.recurring:
        console.print("\n[bold]Recurring errors[/bold]")
        for entry in analysis.recurring:
            console.print(
                f"  {escape(f'[{entry.signature}]')} {entry.repo_key} ({entry.platform}): "
                f"{entry.count} occurrences, last {entry.last_seen:%Y-%m-%d %H:%M}"
            )
            console.print(f"    [dim]{escape(entry.error_message[:80])}[/dim]")

    console.print("\n[bold]Recommendations[/bold]")
    if analysis.recommendations:
        for recommendation in analysis.recommendations:
            console.print(f"  [yellow]![/yellow] {recommendation}")
    else:
        console.print("  [green]No issues detected. The system is operating normally.[/green]")


@app.command("cleanup")
def cleanup(
    max_age: Optional[float] = typer.Option(None, "--max-age", help="Remove workspaces older than this (seconds)"),
    remove_all: bool = typer.Option(False, "--all", help="Remove every workspace and lease"),
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Remove stale workspaces (or everything with --all)."""
    config = _load(config_path, verbose)
    workspace = WorkspaceManager.from_config(config.workspace, _database(config))

    if remove_all:
        workspaces, leases = workspace.emergency_cleanup()
        console.print(f"[green]✓ Removed {workspaces} workspace(s) and {leases} lease(s)[/green]")
        return

    age = config.workspace.max_age_seconds if max_age is None else max_age
    removed = workspace.cleanup_stale(age)
    console.print(f"[green]✓ Removed {removed} stale workspace(s)[/green]")


@app.command("reset")
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Clear history, throttle ledger and leases."""
    config = _load(config_path, verbose)
    if not yes and not typer.confirm("Delete all healing history and throttle state?"):
        raise typer.Exit(0)

    db = _database(config)
    leases = WorkspaceManager.from_config(config.workspace, db).release_all_locks()
    db.reset()
    console.print(f"[green]✓ Healing state reset ({leases} lease(s) released)[/green]")


@app.command("init")
def init_config(
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Initialize HealClaw configuration."""
    setup_logging(verbose)
    if config_path is not None:
        if config_path.exists():
            console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
            return
        save_config(HealClawConfig(), config_path)
        console.print(f"[green]✓ Created configuration at {config_path}[/green]")
        return

    path = create_default_config()
    console.print(f"[green]✓ Configuration at {path}[/green]")


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"HealClaw v{__version__}")


# ============================================================================
# Entry Point
# ============================================================================


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
