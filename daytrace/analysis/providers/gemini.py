"""
Hosted multimodal provider using the google-genai SDK.

The whole combined clip is uploaded through the Files API, polled until
ACTIVE, then referenced in a schema-constrained generate_content call.
Synthesis is a text-only call with the card schema.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ...config import GeminiConfig
from ...errors import (
    ProviderError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
    RateLimitError,
    TransientProviderError,
)
from ...storage.models import LLMCall, Observation, TimelineCard
from ..media import MediaBundle
from ..retry import poll_until
from .base import SynthesisContext, card_prompt, parse_cards, parse_segments, record_call

logger = logging.getLogger(__name__)


def _string() -> types.Schema:
    return types.Schema(type=types.Type.STRING)


SEGMENT_SCHEMA = types.Schema(
    type=types.Type.ARRAY,
    items=types.Schema(
        type=types.Type.OBJECT,
        properties={"start": _string(), "end": _string(), "description": _string()},
        required=["start", "end", "description"],
    ),
)

CARD_SCHEMA = types.Schema(
    type=types.Type.ARRAY,
    items=types.Schema(
        type=types.Type.OBJECT,
        properties={
            "start_time": _string(),
            "end_time": _string(),
            "category": _string(),
            "subcategory": _string(),
            "title": _string(),
            "summary": _string(),
            "detailed_summary": _string(),
            "distractions": types.Schema(
                type=types.Type.ARRAY,
                items=types.Schema(
                    type=types.Type.OBJECT,
                    properties={
                        "start_time": _string(),
                        "end_time": _string(),
                        "title": _string(),
                        "summary": _string(),
                    },
                    required=["start_time", "end_time", "title"],
                ),
            ),
        },
        required=["start_time", "end_time", "category", "title", "summary"],
    ),
)


def _state_name(file: Any) -> str:
    state = getattr(file, "state", None)
    return str(getattr(state, "name", state) or "").upper()


def _retry_after(exc: genai_errors.APIError) -> Optional[float]:
    headers = getattr(getattr(exc, "response", None), "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Map SDK and transport errors onto the daytrace taxonomy."""
    try:
        yield
    except genai_errors.APIError as e:
        code = getattr(e, "code", None)
        message = f"Gemini {operation} failed ({code}): {getattr(e, 'message', None) or e}"
        if code == 429:
            raise RateLimitError(message, retry_after=_retry_after(e)) from e
        if code is not None and (code >= 500 or code == 408):
            raise TransientProviderError(message, status_code=code) from e
        raise ProviderError(message, status_code=code) from e
    except httpx.TimeoutException as e:
        raise ProviderTimeoutError(f"Gemini {operation} timed out") from e
    except httpx.TransportError as e:
        raise TransientProviderError(f"Gemini {operation} connection error: {e}") from e


class GeminiProvider:
    name = "gemini"

    def __init__(self, config: GeminiConfig, observation_tolerance: int = 120):
        if not config.api_key:
            raise ProviderNotConfiguredError(
                "Gemini API key missing. Set GEMINI_API_KEY or gemini.api_key in config.yaml"
            )
        self.config = config
        self.model = config.model
        self.observation_tolerance = observation_tolerance
        self._client: Optional[genai.Client] = None

    def _get_client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(
                api_key=self.config.api_key,
                http_options=types.HttpOptions(timeout=self.config.request_timeout * 1000),
            )
        return self._client

    # ── Transcription ─────────────────────────────────────────────────────────

    def transcribe(
        self, media: MediaBundle, prompt: str, origin_ts: int
    ) -> tuple[list[Observation], LLMCall]:
        started = time.monotonic()
        uploaded = self._upload(media)
        try:
            with _translate_errors("transcription"):
                response = self._get_client().models.generate_content(
                    model=self.model,
                    contents=[uploaded, prompt],
                    config=types.GenerateContentConfig(
                        temperature=self.config.temperature,
                        response_mime_type="application/json",
                        response_schema=SEGMENT_SCHEMA,
                    ),
                )
        finally:
            self._delete(uploaded)

        raw = response.text or ""
        observations = parse_segments(
            raw, origin_ts, media.duration, self.observation_tolerance, model_id=self.model
        )
        logger.info(f"Gemini transcribed {media.duration:.0f}s of video into {len(observations)} observation(s)")
        return observations, record_call("transcribe", self.model, started, prompt, raw)

    def _upload(self, media: MediaBundle) -> Any:
        client = self._get_client()
        with _translate_errors("upload"):
            uploaded = client.files.upload(
                file=str(media.path),
                config=types.UploadFileConfig(mime_type=media.mime_type),
            )
            logger.debug(f"Uploaded {media.path.name} as {uploaded.name}, waiting for ACTIVE")
            ready = poll_until(
                lambda: client.files.get(name=uploaded.name),
                done=lambda f: _state_name(f) in ("ACTIVE", "FAILED"),
                timeout=self.config.upload_timeout,
                interval=self.config.poll_interval,
                what="video upload to become ACTIVE",
            )
        if _state_name(ready) == "FAILED":
            self._delete(uploaded)
            raise ProviderError("Gemini could not process the uploaded video")
        return ready

    def _delete(self, uploaded: Any) -> None:
        try:
            self._get_client().files.delete(name=uploaded.name)
        except (genai_errors.APIError, httpx.HTTPError) as e:
            logger.debug(f"Could not delete uploaded file {uploaded.name}: {e}")

    # ── Synthesis ─────────────────────────────────────────────────────────────

    def synthesize(
        self, observations: list[Observation], context: SynthesisContext
    ) -> tuple[list[TimelineCard], LLMCall]:
        started = time.monotonic()
        prompt = card_prompt(observations, context)
        with _translate_errors("card generation"):
            response = self._get_client().models.generate_content(
                model=self.model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    temperature=self.config.temperature,
                    response_mime_type="application/json",
                    response_schema=CARD_SCHEMA,
                ),
            )
        raw = response.text or ""
        base_ts = observations[0].start_ts if observations else context.window_start_ts
        cards = parse_cards(raw, base_ts)
        return cards, record_call("synthesize", self.model, started, prompt, raw, attempt=context.attempt)
