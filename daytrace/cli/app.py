"""
daytrace CLI commands.

Commands:
  run               Run the analysis scheduler (blocks until Ctrl+C)
  analyze           Form batches now and analyze them
  ingest            Register an already-recorded clip
  batches           List recent analysis batches
  cards             Show the timeline for a day
  reprocess day     Rebuild one day's timeline from its recordings
  reprocess batches Rebuild the timeline for specific batches
  cleanup           Delete old recording files to free disk space
  doctor            Diagnose setup issues
  config            Show configuration
"""
from __future__ import annotations

import logging
import shutil
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console

from ..analysis.media import ffmpeg_available
from ..analysis.orchestrator import Orchestrator
from ..analysis.providers.registry import build_provider, provider_from_config
from ..batching.former import BatchFormer
from ..config import CONFIG_FILE, Config, load_config
from ..errors import DaytraceError
from ..storage.db import Database
from ..storage.models import BatchStatus
from ..timeutil import today
from ..watcher.reprocess import ReprocessCoordinator
from ..watcher.scheduler import AnalysisScheduler
from . import display

app = typer.Typer(
    name="daytrace",
    help="Turn screen recordings into a timeline of your day.",
    no_args_is_help=True,
    add_completion=False,
    pretty_exceptions_enable=False,
)
console = Console()
logger = logging.getLogger(__name__)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _get_db(config: Optional[Config] = None) -> Database:
    cfg = config or load_config()
    return Database(cfg.storage.db_path)


def _build_scheduler(config: Config, db: Database) -> AnalysisScheduler:
    orchestrator = Orchestrator(db, provider_from_config(), config)
    former = BatchFormer(db, config.batching)
    return AnalysisScheduler(config, db, former, orchestrator)


# ── run ───────────────────────────────────────────────────────────────────────

@app.command()
def run() -> None:
    """Run the analysis scheduler. Press Ctrl+C to stop."""
    config = load_config()
    _setup_logging(config.display.log_level)
    display.print_banner()

    if not ffmpeg_available():
        display.print_warn("ffmpeg not found — batches will fail until it is installed.")

    db = _get_db(config)
    scheduler = _build_scheduler(config, db)
    display.print_info(
        f"Checking for new recordings every {config.scheduler.check_interval_seconds}s · Ctrl+C to stop"
    )
    try:
        scheduler.run()
    finally:
        scheduler.stop()


# ── analyze ───────────────────────────────────────────────────────────────────

@app.command()
def analyze() -> None:
    """Form batches from new recordings and analyze every pending batch now."""
    config = load_config()
    _setup_logging(config.display.log_level)
    db = _get_db(config)
    scheduler = _build_scheduler(config, db)

    futures = scheduler.trigger_now(include_pending=True)
    if not futures:
        display.print_success("Nothing to analyze.")
        scheduler.stop()
        return

    with console.status(f"Analyzing {len(futures)} batch(es)..."):
        scheduler.wait_for(futures, timeout=config.scheduler.batch_timeout_seconds)
    scheduler.stop()

    counts: dict[str, int] = {}
    for future in futures:
        if not future.done():
            label = "still running"
        elif future.exception() is not None:
            label = "crashed"
        else:
            label = future.result().value
        counts[label] = counts.get(label, 0) + 1
    summary = ", ".join(f"{n} {label}" for label, n in sorted(counts.items()))
    display.print_success(f"Analysis finished: {summary}")


# ── ingest ────────────────────────────────────────────────────────────────────

@app.command()
def ingest(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Recorded video clip"),
    start: str = typer.Option(..., "--start", help="Recording start, ISO format (2024-05-01T09:30:00)"),
    duration: int = typer.Option(..., "--duration", min=1, help="Clip length in seconds"),
) -> None:
    """Register an already-recorded clip as a completed chunk."""
    try:
        start_ts = int(datetime.fromisoformat(start).timestamp())
    except ValueError:
        display.print_error(f"Invalid --start '{start}'. Use ISO format, e.g. 2024-05-01T09:30:00")
        raise typer.Exit(1)

    db = _get_db()
    chunk_id = db.add_completed_chunk(str(file.resolve()), start_ts, start_ts + duration)
    display.print_success(f"Registered chunk {chunk_id} ({duration}s from {start})")


# ── batches ───────────────────────────────────────────────────────────────────

@app.command()
def batches(
    status: Optional[BatchStatus] = typer.Option(None, "--status", "-s", help="Only this status"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of batches to show"),
) -> None:
    """List recent analysis batches."""
    db = _get_db()
    display.print_batch_list(db.list_batches(status=status, limit=limit))


# ── cards ─────────────────────────────────────────────────────────────────────

@app.command()
def cards(
    day: Optional[str] = typer.Argument(None, help="Logical day YYYY-MM-DD (default: today)"),
) -> None:
    """Show the timeline cards for a day."""
    day = day or today()
    db = _get_db()
    display.print_timeline(db.cards_for_day(day), day)


# ── reprocess ─────────────────────────────────────────────────────────────────
reprocess_app = typer.Typer(name="reprocess", help="Rebuild timeline cards from recordings.", no_args_is_help=True)
app.add_typer(reprocess_app)


def _coordinator(config: Config) -> tuple[ReprocessCoordinator, AnalysisScheduler]:
    db = _get_db(config)
    scheduler = _build_scheduler(config, db)
    return ReprocessCoordinator(db, scheduler, config), scheduler


@reprocess_app.command("day")
def reprocess_day(
    day: str = typer.Argument(..., help="Logical day YYYY-MM-DD"),
) -> None:
    """Delete a day's cards and observations, then analyze its batches again."""
    config = load_config()
    _setup_logging(config.display.log_level)
    coordinator, scheduler = _coordinator(config)
    try:
        result = coordinator.reprocess_day(day, progress=display.print_info)
    finally:
        scheduler.stop()
    display.print_reprocess_result(result)
    if not result.success:
        raise typer.Exit(1)


@reprocess_app.command("batches")
def reprocess_batches(
    batch_ids: list[int] = typer.Argument(..., help="Batch ids to reprocess"),
) -> None:
    """Reprocess specific batches (their whole days' cards are rebuilt)."""
    config = load_config()
    _setup_logging(config.display.log_level)
    coordinator, scheduler = _coordinator(config)
    try:
        result = coordinator.reprocess_batches(batch_ids, progress=display.print_info)
    finally:
        scheduler.stop()
    display.print_reprocess_result(result)
    if not result.success:
        raise typer.Exit(1)


# ── cleanup ───────────────────────────────────────────────────────────────────

@app.command()
def cleanup(
    days: int = typer.Option(
        None,
        "--days",
        help="Delete recordings older than N days (default: from config)",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be deleted"),
) -> None:
    """Delete old recording files of analyzed batches to free disk space."""
    config = load_config()
    max_days = days if days is not None else config.storage.auto_delete_recordings_days

    if max_days <= 0:
        display.print_info("auto_delete_recordings_days is 0 — no cleanup configured.")
        return

    db = _get_db(config)

    if dry_run:
        expired = db.expired_recordings(max_days)
        if not expired:
            display.print_success(f"Nothing to clean up (threshold: {max_days} days).")
        else:
            console.print(f"Would delete {len(expired)} recording file(s):")
            for chunk in expired:
                console.print(f"  {chunk.id}  {chunk.file_ref}")
        return

    cleaned = db.cleanup_old_recordings(max_days)
    if cleaned:
        display.print_success(f"Deleted {cleaned} recording file(s) older than {max_days} days.")
    else:
        display.print_success("Nothing to clean up.")


# ── doctor ────────────────────────────────────────────────────────────────────

@app.command()
def doctor() -> None:
    """Diagnose daytrace setup and check all dependencies."""
    config = load_config()
    console.print("\n[bold]daytrace doctor[/bold]\n")
    all_ok = True

    # ffmpeg
    ffmpeg_ok = ffmpeg_available()
    display.print_check("ffmpeg installed", ffmpeg_ok, "run: brew install ffmpeg" if not ffmpeg_ok else "")
    all_ok = all_ok and ffmpeg_ok

    # Provider
    try:
        provider = build_provider(config)
        display.print_check(f"Provider {provider.name} ({provider.model})", True)
        if hasattr(provider, "close"):
            provider.close()
    except DaytraceError as e:
        display.print_check(f"Provider {config.provider.kind}", False, str(e))
        all_ok = False

    if config.provider.kind == "ollama":
        try:
            result = subprocess.run(["ollama", "list"], capture_output=True, text=True, timeout=5)
            model_ok = result.returncode == 0 and config.ollama.model in result.stdout
            display.print_check(
                f"Model {config.ollama.model}",
                model_ok,
                f"not found — run: ollama pull {config.ollama.model}" if not model_ok else "",
            )
            all_ok = all_ok and model_ok
        except (FileNotFoundError, subprocess.TimeoutExpired):
            display.print_check("Ollama installed", False, "run: brew install ollama")
            all_ok = False

    # Data directory
    data_path = config.storage.data_path
    try:
        data_path.mkdir(parents=True, exist_ok=True)
        free_gb = shutil.disk_usage(data_path).free / 1024 ** 3
        disk_ok = free_gb >= 2.0
        display.print_check(
            f"Data directory {data_path} ({free_gb:.1f} GB free)",
            disk_ok,
            "low — recordings may fail" if not disk_ok else "",
        )
        all_ok = all_ok and disk_ok
    except OSError as e:
        display.print_check(f"Data directory {data_path}", False, str(e))
        all_ok = False

    # Config
    config_exists = CONFIG_FILE.exists()
    display.print_check(
        f"Config file ({CONFIG_FILE})",
        config_exists,
        "using defaults" if not config_exists else "",
    )

    console.print()
    if all_ok:
        display.print_success("All checks passed. Run 'daytrace run' to start analyzing.")
    else:
        display.print_error("Some checks failed. Fix issues above, then re-run 'daytrace doctor'.")


# ── config ────────────────────────────────────────────────────────────────────
config_app = typer.Typer(name="config", help="View configuration.", no_args_is_help=True)
app.add_typer(config_app)


@config_app.command("show")
def config_show() -> None:
    """Print current configuration."""
    config = load_config()
    console.print(yaml.dump(config.model_dump(), default_flow_style=False, sort_keys=False))


@config_app.command("path")
def config_path() -> None:
    """Show path to the config file."""
    console.print(str(CONFIG_FILE))
