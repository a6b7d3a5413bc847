"""
Exception taxonomy for the SolarEdge power-flow poller.

Every expected failure of a polling cycle is a subclass of PollerError so the
cycle runner can map it onto an outcome and a log level in one place:

- ConfigError: site id or API key missing; no network call is attempted.
- FetchError: transport failure, non-2xx status, or a 2xx response with no
  usable content.
- ParseError (MissingFieldError / InvalidValueError): the power-flow payload
  is incomplete or garbled; nothing is published.
- CycleTimeoutError: the cycle deadline expired.

CHANGELOG:
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

from enum import StrEnum


class PollerError(Exception):
    """Base class for all expected poller failures."""


class ConfigError(PollerError):
    """Required configuration (site id or API key) is missing."""


class FetchErrorKind(StrEnum):
    """Classification of a failed monitoring API request."""

    TRANSPORT = "transport"
    HTTP_STATUS = "http_status"
    EMPTY_BODY = "empty_body"


class FetchError(PollerError):
    """The monitoring API request did not yield a usable JSON document.

    Args:
        kind: Failure classification.
        status_code: HTTP status, when a response was received.
        raw_body: Response text, when a response was received.
    """

    def __init__(
        self,
        kind: FetchErrorKind,
        *,
        status_code: int | None = None,
        raw_body: str | None = None,
        detail: str = "",
    ) -> None:
        self.kind = kind
        self.status_code = status_code
        self.raw_body = raw_body
        message = f"fetch failed ({kind})"
        if status_code is not None:
            message += f" status={status_code}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ParseError(PollerError):
    """The power-flow payload could not be turned into a snapshot.

    Args:
        field: Dotted name of the offending field, e.g. ``STORAGE.chargeLevel``.
    """

    reason = "invalid payload"

    def __init__(self, field: str, detail: str = "") -> None:
        self.field = field
        message = f"{self.reason}: {field}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class MissingFieldError(ParseError):
    """A required field or node is absent."""

    reason = "missing field"


class InvalidValueError(ParseError):
    """A field is present but has the wrong type or an out-of-range value."""

    reason = "invalid value"


class CycleTimeoutError(PollerError):
    """The polling cycle exceeded its deadline."""

    def __init__(self, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        super().__init__(f"cycle did not complete within {timeout_s}s")
