"""Error taxonomy for the combined analysis relay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for errors raised by the relay pipeline."""


class ValidationError(RelayError):
    """Request payload has the wrong shape; surfaced to the caller as HTTP 400."""


class UpstreamUnavailable(RelayError):
    """Completion API cannot be reached (missing credential or transport failure)."""


class UpstreamHTTPError(RelayError):
    def __init__(self, status: int, status_text: str, body: str = ""):
        self.status = int(status)
        self.status_text = status_text or ""
        self.body = body or ""
        super().__init__(f"Completion API returned {self.status} {self.status_text}".strip())


class StreamDecodeError(RelayError):
    """Upstream bytes could not be decoded as text."""


class ChartUnavailable(RelayError):
    """Chart generation failed or the chart library is not installed."""
