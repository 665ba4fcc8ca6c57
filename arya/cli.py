"""
Arya Rich Terminal Interface
~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Terminal front-end for the activity recorder: a live dashboard while
tracking, and commands to inspect, reset and re-classify the saved record.
Built with Click + Rich.
"""

import logging
import signal
import time
from datetime import datetime
from typing import List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.panel import Panel
from rich.text import Text
from rich.live import Live
from rich import box

from . import config as cfg
from .observer import X11Observer
from .record import ActivityRecord, RecordFormatError
from .recorder import Recorder
from .report import StatSection, build_report, format_duration, total_tracked_ms
from .rules import NO_PROJECT, RuleSet, RulesFormatError, load_rules
from .system import (
    ShutdownGuard,
    remove_pid_file,
    request_recalculation,
    running_recorder_pid,
    write_pid_file,
)
from .timeline import utc_now

console = Console()


# ── Formatting Helpers ─────────────────────────────────────────────────────

def format_time(moment: Optional[datetime]) -> str:
    """Format a timestamp as local YYYY-MM-DD HH:MM:SS."""
    if moment is None:
        return "never"
    return moment.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def truncate(text: str, max_len: int = 50) -> str:
    """Truncate text with ellipsis."""
    if len(text) > max_len:
        return text[: max_len - 1] + "…"
    return text


def setup_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _load_rules_or_exit() -> RuleSet:
    path = cfg.ensure_rules_file(cfg.RULES_PATH)
    try:
        return load_rules(path)
    except RulesFormatError as e:
        console.print(f"[red]✘ {e}[/red]")
        raise SystemExit(1)


def _load_record_or_exit(rules: RuleSet, config: cfg.TrackerConfig) -> Optional[ActivityRecord]:
    if not cfg.RECORD_PATH.exists():
        console.print("\n[yellow]No activity recorded yet. Run `arya start` first![/yellow]")
        return None
    try:
        return ActivityRecord.load_from_file(cfg.RECORD_PATH, rules, config)
    except RecordFormatError as e:
        console.print(f"[red]✘ {e}[/red]")
        console.print(f"[dim]A copy of the file was kept at {cfg.RECORD_PATH}.bak[/dim]")
        raise SystemExit(1)


def _section_table(section: StatSection, limit: int) -> Table:
    table = Table(
        title=section.title,
        box=box.SIMPLE_HEAVY,
        show_lines=False,
        title_style="bold bright_cyan",
    )
    table.add_column("#", style="dim", width=3)
    table.add_column("Name", style="bold", min_width=20)
    table.add_column("Duration", justify="right", style="cyan")

    for i, row in enumerate(section.rows[:limit], 1):
        name = f"[dim]{row.name}[/dim]" if row.is_paused else truncate(row.name, 60)
        table.add_row(str(i), name, row.label)

    if len(section.rows) > limit:
        table.add_row("", f"[dim]... and {len(section.rows) - limit} more[/dim]", "")
    return table


# ── CLI Group ──────────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0", prog_name="Arya")
@click.option(
    "--log-level",
    type=click.Choice(cfg.LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Override the configured log level",
)
@click.pass_context
def main(ctx, log_level):
    """Arya: Automatic Recorder of Your Activity.

    Tracks time spent per application, window, workspace and project,
    where projects are assigned from window titles by ordered regex rules
    kept in ~/.arya/projects.json.
    """
    config = cfg.load_config()
    if log_level:
        config.log_level = log_level.upper()
    setup_logging(config.log_level)
    ctx.obj = config


# ── START Command ──────────────────────────────────────────────────────────

@main.command()
@click.option("--poll-interval", type=float, default=None, help="Polling interval in seconds")
@click.option("--save-interval", type=float, default=None, help="Autosave interval in seconds")
@click.pass_obj
def start(config: cfg.TrackerConfig, poll_interval, save_interval):
    """Start recording with a live dashboard."""
    if poll_interval is not None:
        config.poll_interval = poll_interval
    if save_interval is not None:
        config.save_interval = save_interval

    running = running_recorder_pid(cfg.PID_PATH)
    if running:
        console.print(f"[red]✘ A recorder is already running (pid {running}).[/red]")
        raise SystemExit(1)

    recorder = Recorder(X11Observer(), config, cfg.RULES_PATH, cfg.RECORD_PATH)
    try:
        recorder.open()
    except RecordFormatError as e:
        console.print(f"[red]✘ {e}[/red]")
        console.print(f"[dim]A copy of the file was kept at {cfg.RECORD_PATH}.bak[/dim]")
        raise SystemExit(1)

    write_pid_file(cfg.PID_PATH)
    # `arya rules --recalculate` sends SIGHUP to a running recorder
    signal.signal(signal.SIGHUP, lambda signum, frame: recorder.request_reload(recalculate=True))

    guard = ShutdownGuard()
    guard.start(recorder.save)
    recorder.start()

    console.print()
    console.print("[bold green]✔ Recorder started![/bold green]")
    console.print(f"  [dim]Poll interval:[/dim]  {config.poll_interval}s")
    console.print(f"  [dim]Autosave:[/dim]       every {config.save_interval}s")
    console.print(f"  [dim]Record:[/dim]         {cfg.RECORD_PATH}")
    console.print(f"  [dim]Rules:[/dim]          {cfg.RULES_PATH}")
    console.print()
    console.print("[yellow]Press Ctrl+C to stop recording.[/yellow]")
    console.print()

    try:
        with Live(console=console, refresh_per_second=1, transient=True) as live:
            while True:
                live.update(_build_live_panel(recorder))
                time.sleep(1)
    except (KeyboardInterrupt, SystemExit):
        console.print()
        console.print("[yellow]⏳ Stopping recorder...[/yellow]")
        recorder.stop()
        guard.stop()
        console.print("[bold green]✔ Activity record saved.[/bold green]")
    finally:
        remove_pid_file(cfg.PID_PATH)


def _build_live_panel(recorder: Recorder) -> Panel:
    """Build the live dashboard panel."""
    current = recorder.get_current()
    if not current:
        return Panel(Text("Waiting for window activity...", style="dim italic"))

    snapshot = recorder.get_stats()
    lines = Text()
    if current["paused"]:
        lines.append("  ⏸  Paused (screen locked)\n\n", style="bold yellow")
    lines.append("  App:        ", style="dim")
    lines.append(f"{current['app']}\n", style="bold white")
    lines.append("  Window:     ", style="dim")
    lines.append(f"{truncate(current['window'], 70)}\n", style="white")
    lines.append("  Workspace:  ", style="dim")
    lines.append(f"{current['workspace']}\n", style="white")
    lines.append("  Project:    ", style="dim")
    project_style = "yellow" if current["project"] == NO_PROJECT else "bold green"
    lines.append(f"{current['project']}\n\n", style=project_style)

    for section in build_report({"projects": snapshot["projects"]}):
        for row in section.rows[:8]:
            lines.append(f"  {row.label:>8}  ", style="cyan")
            lines.append(f"{truncate(row.name, 60)}\n", style="dim" if row.is_paused else "white")

    lines.append("\n  Session:    ", style="dim")
    lines.append(format_duration(current["session_ms"]), style="bright_blue")
    lines.append("  │  Tracked: ", style="dim")
    lines.append(format_duration(total_tracked_ms(snapshot)), style="bright_blue")

    return Panel(
        lines,
        title="[bold bright_cyan]⚡ Arya Live[/bold bright_cyan]",
        subtitle=f"[dim]{datetime.now().strftime('%H:%M:%S')}[/dim]",
        border_style="bright_blue",
        box=box.ROUNDED,
        padding=(1, 2),
    )


# ── STATS Command ──────────────────────────────────────────────────────────

@main.command()
@click.option("--limit", "-n", default=15, help="Max rows per table")
@click.option("--min-minutes", default=1.0, help="Hide entries shorter than this")
@click.option(
    "--show", "-s", "sections",
    multiple=True,
    type=click.Choice(["apps", "workspaces", "windows", "projects"]),
    help="Only show these tables (repeatable)",
)
@click.pass_obj
def stats(config: cfg.TrackerConfig, limit, min_minutes, sections: List[str]):
    """Show time spent per application, workspace, window and project."""
    rules = _load_rules_or_exit()
    record = _load_record_or_exit(rules, config)
    if record is None:
        return

    as_of = record.saved or utc_now()
    snapshot = record.get_stats(as_of)
    if sections:
        snapshot = {k: v for k, v in snapshot.items() if k in sections}

    console.print()
    console.print(
        Panel(
            f"[bold]Activity since {format_time(record.created)}[/bold]"
            f"\n[dim]Saved {format_time(record.saved)}[/dim]",
            border_style="bright_cyan",
            box=box.DOUBLE_EDGE,
        )
    )

    report = build_report(snapshot, min_ms=int(min_minutes * 60_000))
    if not report:
        console.print("\n[yellow]Nothing to show yet.[/yellow]")
        return

    for section in report:
        console.print(_section_table(section, limit))
        console.print()

    console.print(
        Panel(
            f"[bold]Total: {format_duration(total_tracked_ms(record.get_stats(as_of)))}[/bold]",
            border_style="green",
            box=box.ROUNDED,
        )
    )


# ── RESET Command ──────────────────────────────────────────────────────────

@main.command()
@click.confirmation_option(prompt="Discard all recorded activity?")
@click.pass_obj
def reset(config: cfg.TrackerConfig):
    """Clear history and start a new session."""
    running = running_recorder_pid(cfg.PID_PATH)
    if running:
        console.print(
            f"[red]✘ A recorder is running (pid {running}). "
            f"Stop it before clearing history.[/red]"
        )
        raise SystemExit(1)

    recorder =Recorder(X11Observer(), config, cfg.RULES_PATH, cfg.RECORD_PATH)
    cfg.ensure_rules_file(cfg.RULES_PATH)
    recorder.reload_rules()
    recorder.reset()
    console.print("[bold green]✔ History cleared.[/bold green]")


# ── RULES Command ──────────────────────────────────────────────────────────

@main.command()
@click.option(
    "--recalculate", is_flag=True,
    help="Re-classify the saved window history with the current rules",
)
@click.pass_obj
def rules(config: cfg.TrackerConfig, recalculate):
    """Show the project rules (and optionally re-apply them)."""
    rule_set = _load_rules_or_exit()

    table = Table(
        title="📂 Projects (first match wins)",
        box=box.SIMPLE_HEAVY,
        title_style="bold bright_cyan",
    )
    table.add_column("#", style="dim", width=3)
    table.add_column("Project", style="bold", min_width=20)
    table.add_column("Patterns", style="cyan")

    for i, project in enumerate(rule_set.project_order, 1):
        table.add_row(str(i), project, ", ".join(rule_set.rules_by_project[project]))

    console.print()
    console.print(table)
    if rule_set.ignore_patterns:
        console.print(f"  [dim]Ignored titles:[/dim] {', '.join(rule_set.ignore_patterns)}")
    console.print()

    if not recalculate:
        return

    # A running recorder owns the record; it re-classifies and saves itself
    running = running_recorder_pid(cfg.PID_PATH)
    if running:
        request_recalculation(running)
        console.print(
            f"[bold green]✔ Asked the running recorder (pid {running}) "
            f"to re-classify its history.[/bold green]"
        )
        return

    record = _load_record_or_exit(rule_set, config)
    if record is None:
        return
    record.recalculate_projects()
    record.save_to_file(cfg.RECORD_PATH, record.saved)
    console.print(
        f"[bold green]✔ Re-classified {len(record.windows.history)} window entries "
        f"into {len(record.projects.history)} project transitions.[/bold green]"
    )


# ── STATUS Command ─────────────────────────────────────────────────────────

@main.command()
@click.pass_obj
def status(config: cfg.TrackerConfig):
    """Show Arya status and file locations."""
    info_table = Table(box=box.SIMPLE, show_header=False, padding=(0, 2))
    info_table.add_column("Key", style="dim")
    info_table.add_column("Value", style="bold")

    info_table.add_row("Config", str(cfg.CONFIG_PATH))
    info_table.add_row("Rules", str(cfg.RULES_PATH))
    info_table.add_row("Record", str(cfg.RECORD_PATH))
    info_table.add_row("Record Exists", "✔ Yes" if cfg.RECORD_PATH.exists() else "✘ No")

    tracked = [
        name for name, on in (
            ("apps", config.track_apps),
            ("workspaces", config.track_workspaces),
            ("projects", config.track_projects),
        ) if on
    ]
    info_table.add_row("Tracking", ", ".join(["windows", *tracked]))

    if cfg.RECORD_PATH.exists():
        try:
            record = ActivityRecord.load_from_file(cfg.RECORD_PATH, RuleSet(), config)
        except RecordFormatError as e:
            info_table.add_row("Record Error", f"[red]{e}[/red]")
        else:
            info_table.add_row("Session Start", format_time(record.created))
            info_table.add_row("Last Saved", format_time(record.saved))
            info_table.add_row("Paused", "Yes" if record.paused else "No")
            info_table.add_row("Window Switches", str(len(record.windows.history) - 1))

    console.print()
    console.print(Panel(info_table, title="[bold]Arya Status[/bold]", border_style="bright_cyan"))
    console.print()


# ── Entry Point ────────────────────────────────────────────────────────────

if __name__ == "__main__":
    main()
