"""
ffmpeg helpers: stitch a batch's chunks into one clip, sample frames for
local models, and render per-card timelapses.

All calls block; they run on the batch worker thread.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import MediaError
from ..storage.models import RecordingChunk

logger = logging.getLogger(__name__)

FFMPEG_TIMEOUT_SECONDS = 600
TIMELAPSE_FPS = 24


@dataclass
class MediaBundle:
    """Combined video for one batch. Offsets inside it start at origin_ts."""
    path: Path
    duration: float
    origin_ts: int
    mime_type: str = "video/mp4"
    owned: bool = False   # True when path is a temp file we created

    def cleanup(self) -> None:
        if self.owned:
            shutil.rmtree(self.path.parent, ignore_errors=True)


def ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None


def _run_ffmpeg(args: list[str], timeout: int = FFMPEG_TIMEOUT_SECONDS) -> None:
    cmd = ["ffmpeg", "-hide_banner", "-loglevel", "error", "-y", *args]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, check=False)
    except FileNotFoundError as e:
        raise MediaError("ffmpeg not found. Install it (brew install ffmpeg) and retry.") from e
    except (OSError, subprocess.SubprocessError) as e:
        raise MediaError(f"ffmpeg failed to run: {e}") from e
    if result.returncode != 0:
        raise MediaError(f"ffmpeg exited with {result.returncode}: {result.stderr.strip()[:300]}")


def _write_concat_list(chunks: list[RecordingChunk], list_path: Path) -> None:
    lines = []
    for chunk in chunks:
        escaped = str(Path(chunk.file_ref).resolve()).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    list_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def combine_chunks(chunks: list[RecordingChunk]) -> MediaBundle:
    """
    Concatenate chunk files (stream copy, no re-encode) into a temp mp4.
    A single chunk is used in place.
    """
    if not chunks:
        raise MediaError("No video chunks to combine")

    ordered = sorted(chunks, key=lambda c: c.start_ts)
    missing = [c.file_ref for c in ordered if not Path(c.file_ref).exists()]
    if missing:
        raise MediaError(f"Missing video file(s): {', '.join(missing[:3])}")

    duration = float(sum(c.duration for c in ordered))
    origin = ordered[0].start_ts

    if len(ordered) == 1:
        return MediaBundle(path=Path(ordered[0].file_ref), duration=duration, origin_ts=origin)

    workdir = Path(tempfile.mkdtemp(prefix="daytrace-batch-"))
    list_path = workdir / "chunks.txt"
    out_path = workdir / "combined.mp4"
    _write_concat_list(ordered, list_path)
    try:
        _run_ffmpeg(["-f", "concat", "-safe", "0", "-i", str(list_path), "-c", "copy", str(out_path)])
    except MediaError:
        shutil.rmtree(workdir, ignore_errors=True)
        raise

    logger.debug(f"Combined {len(ordered)} chunk(s) into {out_path} ({duration:.0f}s)")
    return MediaBundle(path=out_path, duration=duration, origin_ts=origin, owned=True)


def extract_frames(media: MediaBundle, interval_seconds: int, out_dir: Path) -> list[tuple[int, Path]]:
    """
    Sample one JPEG every interval_seconds. Returns (offset_seconds, path)
    pairs in order.
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    pattern = out_dir / "frame_%05d.jpg"
    _run_ffmpeg([
        "-i", str(media.path),
        "-vf", f"fps=1/{max(1, interval_seconds)},scale=1280:-2",
        "-q:v", "4",
        str(pattern),
    ])
    frames = sorted(out_dir.glob("frame_*.jpg"))
    return [(i * interval_seconds, path) for i, path in enumerate(frames)]


def render_timelapse(
    chunks: list[RecordingChunk],
    start_ts: int,
    end_ts: int,
    out_path: Path,
    speedup: int = 20,
) -> Optional[Path]:
    """Speed up the footage covering [start_ts, end_ts] into out_path."""
    covering = [c for c in sorted(chunks, key=lambda c: c.start_ts) if c.start_ts < end_ts and c.end_ts > start_ts]
    covering = [c for c in covering if Path(c.file_ref).exists()]
    if not covering:
        return None

    out_path.parent.mkdir(parents=True, exist_ok=True)
    combined = combine_chunks(covering)
    try:
        offset = max(0, start_ts - combined.origin_ts)
        length = max(1, end_ts - max(start_ts, combined.origin_ts))
        _run_ffmpeg([
            "-ss", str(offset),
            "-t", str(length),
            "-i", str(combined.path),
            "-vf", f"setpts=PTS/{max(1, speedup)}",
            "-r", str(TIMELAPSE_FPS),
            "-an",
            str(out_path),
        ])
    finally:
        combined.cleanup()
    return out_path


def delete_media_files(refs: list[str]) -> None:
    """Remove reclaimed timelapse files; missing files are fine."""
    for ref in refs:
        try:
            Path(ref).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not delete {ref}: {e}")
