"""
Error taxonomy for the analysis pipeline.

Transient errors are retried by analysis.retry; everything else fails the
batch on first occurrence. Validation problems are not exceptions: they are
returned as message lists by analysis.validation.
"""
from __future__ import annotations

import sqlite3
from typing import Optional


class DaytraceError(Exception):
    """Base class for all daytrace errors."""


class ProviderNotConfiguredError(DaytraceError):
    """No usable LLM provider. Raised before a batch is claimed."""


class ProviderError(DaytraceError):
    """Non-transient provider failure (bad credentials, rejected request)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Failure worth retrying: network hiccup, 5xx, rate limit, bad JSON."""


class RateLimitError(TransientProviderError):
    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ProviderTimeoutError(TransientProviderError):
    pass


class MalformedResponseError(TransientProviderError):
    pass


class MediaError(DaytraceError):
    """ffmpeg could not assemble, sample or render video."""


# Substring → friendly message, checked in order against the lowercased error text
_MESSAGE_TABLE: list[tuple[tuple[str, ...], str]] = [
    (("rate limit", "429", "quota"), "Rate limit exceeded. Too many requests were sent to the AI provider."),
    (("401", "403", "api key", "unauthorized", "permission"), "Authentication failed. Check the provider API key in your config."),
    (("timed out", "timeout"), "The AI provider took too long to respond."),
    (("connection", "network", "unreachable"), "Could not reach the AI provider. Check your network connection."),
    (("500", "502", "503", "504", "unavailable", "overloaded"), "The AI provider is temporarily unavailable."),
    (("json", "parse", "decode", "malformed"), "The AI provider returned a response that could not be understood."),
    (("ffmpeg", "video", "media"), "The screen recording for this period could not be processed."),
    (("no observations", "zero observations"), "No activity could be recognised in the recording."),
]


def human_readable(exc: BaseException) -> str:
    """Short reason string stored on failed batches and shown on error cards."""
    if isinstance(exc, ProviderNotConfiguredError):
        return "No AI provider is configured."
    if isinstance(exc, sqlite3.Error):
        return f"Database error: {exc}"

    text = str(exc).strip() or type(exc).__name__
    lowered = text.lower()
    for needles, friendly in _MESSAGE_TABLE:
        if any(n in lowered for n in needles):
            return f"{friendly} ({text})"
    return text
