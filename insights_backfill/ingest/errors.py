"""Error taxonomy for the insights backfill."""

from __future__ import annotations

import asyncio
import enum
import re

import httpx


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"
    SCHEMA_MISMATCH = "schema_mismatch"


TRANSIENT_PHRASES = (
    "unsupported request",
    "temporarily unavailable",
    "not completed yet",
    "job timed out",
    "internal error",
)

SCHEMA_MISMATCH_PATTERNS = (
    re.compile(r"schema cache"),
    re.compile(r"no such column"),
    re.compile(r"has no column named"),
    re.compile(r"column .* does not exist"),
    re.compile(r"could not find the .* column"),
)


class BackfillError(Exception):
    """Base class for errors raised by the backfill."""


class ConfigurationError(BackfillError, ValueError):
    """Invalid run configuration; raised before any I/O happens."""


class InvalidRangeError(ConfigurationError):
    """``until`` falls before ``since``."""


class MetaApiError(BackfillError):
    """Error returned by the Meta Graph API, classified where it is raised."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        payload: str | None = None,
        kind: ErrorKind | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload
        self.kind = kind or classify_message(message)


def classify_message(message: str) -> ErrorKind:
    lowered = message.lower()
    if any(pattern.search(lowered) for pattern in SCHEMA_MISMATCH_PATTERNS):
        return ErrorKind.SCHEMA_MISMATCH
    if any(phrase in lowered for phrase in TRANSIENT_PHRASES):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


def classify_error(exc: BaseException) -> ErrorKind:
    kind = getattr(exc, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        return ErrorKind.TRANSIENT
    return classify_message(str(exc))


def is_transient(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorKind.TRANSIENT
