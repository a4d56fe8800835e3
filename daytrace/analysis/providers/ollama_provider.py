"""
Local provider backed by an Ollama vision model.

Small local models can't watch a whole video, so transcription samples one
frame per interval with ffmpeg, describes each frame, then asks the model to
merge the descriptions into timestamped segments. Synthesis is a plain text
call in JSON mode.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import httpx

from ...config import OllamaConfig
from ...errors import (
    MediaError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    TransientProviderError,
)
from ...storage.models import LLMCall, Observation, TimelineCard
from ...timeutil import format_offset
from ..media import MediaBundle, extract_frames
from ..prompts import CURRENT_FRAME_MERGE_PROMPT, CURRENT_FRAME_PROMPT
from .base import SynthesisContext, card_prompt, parse_cards, parse_segments, record_call

logger = logging.getLogger(__name__)


# ── Ollama daemon management ──────────────────────────────────────────────────

def ensure_ollama_running(host: str = "http://localhost:11434") -> None:
    """Start Ollama if it isn't responding. Waits up to 30s for startup."""
    import ollama as sdk
    client = sdk.Client(host=host)
    try:
        client.list()
        return  # already running
    except Exception:
        pass

    if shutil.which("ollama") is None:
        raise ProviderError(f"Ollama is not reachable at {host} and the 'ollama' binary is not installed")

    logger.info("Ollama not running — starting it...")
    subprocess.Popen(
        ["ollama", "serve"],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )

    for _ in range(30):
        time.sleep(1)
        try:
            client.list()
            logger.info("Ollama started")
            return
        except Exception:
            pass

    raise TransientProviderError(
        "Could not start Ollama. Run 'ollama serve' in a separate terminal and try again."
    )


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    import ollama as sdk
    try:
        yield
    except sdk.ResponseError as e:
        code = getattr(e, "status_code", None)
        message = f"Ollama {operation} failed ({code}): {e.error}"
        if code == 429:
            raise RateLimitError(message) from e
        if code is not None and code >= 500:
            raise TransientProviderError(message, status_code=code) from e
        raise ProviderError(message, status_code=code) from e
    except httpx.TimeoutException as e:
        raise ProviderTimeoutError(f"Ollama {operation} timed out") from e
    except (httpx.TransportError, ConnectionError) as e:
        raise TransientProviderError(f"Ollama {operation} connection error: {e}") from e


class OllamaProvider:
    name = "ollama"

    def __init__(self, config: OllamaConfig, observation_tolerance: int = 120):
        self.config = config
        self.model = config.model
        self.observation_tolerance = observation_tolerance
        self._client = None

    def _get_client(self):
        if self._client is None:
            import ollama as sdk
            self._client = sdk.Client(host=self.config.host, timeout=self.config.request_timeout)
        return self._client

    def _generate(self, prompt: str, operation: str, images: Optional[list[bytes]] = None, json_mode: bool = False) -> str:
        kwargs = {"format": "json"} if json_mode else {}
        with _translate_errors(operation):
            response = self._get_client().generate(
                model=self.model,
                prompt=prompt,
                images=images,
                options={"temperature": self.config.temperature},
                **kwargs,
            )
        return response["response"].strip()

    # ── Transcription ─────────────────────────────────────────────────────────

    def transcribe(
        self, media: MediaBundle, prompt: str, origin_ts: int
    ) -> tuple[list[Observation], LLMCall]:
        ensure_ollama_running(self.config.host)
        started = time.monotonic()

        frames_dir = Path(tempfile.mkdtemp(prefix="daytrace-frames-"))
        try:
            frames = extract_frames(media, self.config.frame_interval_seconds, frames_dir)
            if not frames:
                raise MediaError(f"No frames could be sampled from {media.path.name}")

            logger.info(f"Describing {len(frames)} frame(s) with {self.model}")
            descriptions = []
            for offset, path in frames:
                text = self._generate(
                    CURRENT_FRAME_PROMPT.format(offset=format_offset(offset)),
                    "frame description",
                    images=[path.read_bytes()],
                )
                if text:
                    descriptions.append(f"[{format_offset(offset)}] {text}")
        finally:
            shutil.rmtree(frames_dir, ignore_errors=True)

        merge_prompt = CURRENT_FRAME_MERGE_PROMPT.format(
            duration=format_offset(media.duration),
            frames="\n".join(descriptions),
        )
        raw = self._generate(merge_prompt, "segment merge", json_mode=True)
        observations = parse_segments(
            raw, origin_ts, media.duration, self.observation_tolerance, model_id=self.model
        )
        return observations, record_call("transcribe", self.model, started, merge_prompt, raw)

    # ── Synthesis ─────────────────────────────────────────────────────────────

    def synthesize(
        self, observations: list[Observation], context: SynthesisContext
    ) -> tuple[list[TimelineCard], LLMCall]:
        ensure_ollama_running(self.config.host)
        started = time.monotonic()
        prompt = card_prompt(observations, context)
        raw = self._generate(prompt, "card generation", json_mode=True)
        base_ts = observations[0].start_ts if observations else context.window_start_ts
        cards = parse_cards(raw, base_ts)
        return cards, record_call("synthesize", self.model, started, prompt, raw, attempt=context.attempt)
