"""
Rich display helpers for daytrace CLI.
All terminal output goes through this module for consistency.
"""
from __future__ import annotations

from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..storage.models import AnalysisBatch, TimelineCard
from ..timeutil import format_clock, format_duration

console = Console()

_STATUS_COLORS = {
    "pending": "yellow",
    "processing": "blue",
    "analyzed": "green",
    "completed": "green",
    "failed": "red",
    "failed_empty": "red",
    "skipped_short": "dim",
}


# ── Banners ───────────────────────────────────────────────────────────────────

def print_banner() -> None:
    console.print()
    console.print(Panel.fit(
        "[bold]daytrace[/bold]  ·  your day, as a timeline",
        border_style="dim",
        padding=(0, 2),
    ))
    console.print()


# ── Batch list ────────────────────────────────────────────────────────────────

def print_batch_list(batches: list[AnalysisBatch]) -> None:
    if not batches:
        console.print("[dim]No batches yet. Record some clips and run 'daytrace analyze'.[/dim]")
        return

    table = Table(
        show_header=True,
        header_style="bold",
        box=None,
        padding=(0, 1),
        show_edge=False,
    )
    table.add_column("ID", style="dim", width=6, no_wrap=True)
    table.add_column("Start", width=17, no_wrap=True)
    table.add_column("Length", width=9, no_wrap=True)
    table.add_column("Status", width=14, no_wrap=True)
    table.add_column("Reason", min_width=20)

    for b in batches:
        started = datetime.fromtimestamp(b.start_ts)
        table.add_row(
            str(b.id),
            started.strftime("%b %d  %H:%M"),
            format_duration(b.duration),
            Text(b.status.value, style=_STATUS_COLORS.get(b.status.value, "white")),
            b.reason or "",
        )

    console.print(table)


# ── Timeline ──────────────────────────────────────────────────────────────────

def print_timeline(cards: list[TimelineCard], day: str) -> None:
    console.print(Panel.fit(f"[bold]Timeline[/bold]  ·  {day}", border_style="dim"))
    console.print()

    if not cards:
        console.print("[dim]No timeline cards for this day.[/dim]")
        return

    for card in cards:
        time_range = f"{format_clock(card.start_ts)} – {format_clock(card.end_ts)}"
        style = "red" if card.category == "System" else "cyan"
        flag = "" if card.validated else "  [yellow](unverified)[/yellow]"
        console.print(
            f"[dim]{time_range:<19}[/dim] [{style}]{card.category}[/{style}]"
            f"{' / ' + card.subcategory if card.subcategory else ''}  "
            f"[bold]{card.title}[/bold]{flag}"
        )
        if card.summary:
            console.print(f"  {card.summary}")
        for d in card.distractions:
            console.print(
                f"  [yellow]↳[/yellow] [dim]{format_clock(d.start_ts)}[/dim] {d.title}"
            )
        if card.video_summary_ref:
            console.print(f"  [dim]timelapse: {card.video_summary_ref}[/dim]")
        console.print()


# ── Reprocess ───────────────────────────────────────────────────────────────

def print_reprocess_result(result) -> None:
    console.print()
    console.print("─" * 48)
    if result.success:
        display_line = f"Reprocessed {result.processed}/{result.total} batch(es) in {format_duration(result.elapsed)}"
        print_success(display_line)
    else:
        print_error(result.error or "Reprocessing failed")
        return

    for t in result.timings:
        status = t.status.value if t.status else "timed out"
        color = _STATUS_COLORS.get(status, "yellow")
        console.print(f"  #{t.batch_id:<6} {format_duration(t.seconds):>8}  [{color}]{status}[/{color}]")
    if result.timings:
        console.print(f"  [dim]average {format_duration(result.average)} per batch[/dim]")
    console.print()


# ── Doctor ────────────────────────────────────────────────────────────────────

def print_check(label: str, ok: bool, note: str = "") -> None:
    icon = "[green]✓[/green]" if ok else "[red]✗[/red]"
    line = f"  {icon}  {label}"
    if note:
        line += f"  [dim]{note}[/dim]"
    console.print(line)


# ── Utility ───────────────────────────────────────────────────────────────────

def print_error(msg: str) -> None:
    console.print(f"\n[bold red]Error:[/bold red] {msg}\n")


def print_success(msg: str) -> None:
    console.print(f"[bold green]✓[/bold green]  {msg}")


def print_warn(msg: str) -> None:
    console.print(f"[yellow]⚠[/yellow]   {msg}")


def print_info(msg: str) -> None:
    console.print(f"[dim]{msg}[/dim]")
