"""
Managed backend provider: the daytrace service does the model work.

POST /v1/transcribe  multipart clip upload -> {"segments": [...], "model": "..."}
POST /v1/cards       JSON observations + context -> {"cards": [...]}

Authenticated with a bearer token.
"""
from __future__ import annotations

import logging
import time
from typing import Optional

import httpx

from ...config import BackendConfig
from ...errors import (
    ProviderError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
    RateLimitError,
    TransientProviderError,
)
from ...storage.models import LLMCall, Observation, TimelineCard
from ..media import MediaBundle
from .base import SynthesisContext, card_prompt, parse_cards, parse_segments, record_call

logger = logging.getLogger(__name__)


def _raise_for_status(resp: httpx.Response, operation: str) -> None:
    code = resp.status_code
    if code < 400:
        return
    message = f"Backend {operation} failed ({code}): {resp.text[:200]}"
    if code == 429:
        retry_after: Optional[float] = None
        try:
            retry_after = float(resp.headers.get("Retry-After", ""))
        except ValueError:
            pass
        raise RateLimitError(message, retry_after=retry_after)
    if code >= 500 or code == 408:
        raise TransientProviderError(message, status_code=code)
    raise ProviderError(message, status_code=code)


class BackendProvider:
    name = "backend"

    def __init__(self, config: BackendConfig, observation_tolerance: int = 120):
        if not config.token:
            raise ProviderNotConfiguredError(
                "Backend token missing. Set DAYTRACE_BACKEND_TOKEN or backend.token in config.yaml"
            )
        self.config = config
        self.model = "daytrace-backend"
        self.observation_tolerance = observation_tolerance
        self._client = httpx.Client(
            base_url=config.endpoint.rstrip("/"),
            headers={"Authorization": f"Bearer {config.token}"},
            timeout=config.request_timeout,
        )

    def _post(self, path: str, operation: str, **kwargs) -> httpx.Response:
        try:
            resp = self._client.post(path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Backend {operation} timed out") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Backend {operation} connection error: {e}") from e
        _raise_for_status(resp, operation)
        return resp

    def transcribe(
        self, media: MediaBundle, prompt: str, origin_ts: int
    ) -> tuple[list[Observation], LLMCall]:
        started = time.monotonic()
        with open(media.path, "rb") as f:
            resp = self._post(
                "/v1/transcribe",
                "transcription",
                files={"file": (media.path.name, f, media.mime_type)},
                data={"duration": str(int(media.duration)), "prompt": prompt},
            )
        observations = parse_segments(
            resp.text, origin_ts, media.duration, self.observation_tolerance, model_id=self.model
        )
        return observations, record_call("transcribe", self.model, started, prompt, resp.text)

    def synthesize(
        self, observations: list[Observation], context: SynthesisContext
    ) -> tuple[list[TimelineCard], LLMCall]:
        started = time.monotonic()
        prompt = card_prompt(observations, context)
        payload = {
            "prompt": prompt,
            "observations": [
                {"start_ts": o.start_ts, "end_ts": o.end_ts, "text": o.text} for o in observations
            ],
            "categories": [c.model_dump() for c in context.categories],
            "window": {"start_ts": context.window_start_ts, "end_ts": context.window_end_ts},
        }
        resp = self._post("/v1/cards", "card generation", json=payload)
        base_ts = observations[0].start_ts if observations else context.window_start_ts
        cards = parse_cards(resp.text, base_ts)
        return cards, record_call("synthesize", self.model, started, prompt, resp.text, attempt=context.attempt)

    def close(self) -> None:
        self._client.close()
