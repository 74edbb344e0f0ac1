# relay/errors.py
from __future__ import annotations


class RelayError(Exception):
    """Base class for every failure the pipeline knows how to report."""


class ConfigurationError(RelayError):
    """Credentials are missing or incomplete; raised before any network call."""


class TransportError(RelayError):
    """The completion endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int, reason: str, body: str):
        self.status_code = status_code
        self.reason = reason
        self.body = body
        super().__init__(f"HTTP {status_code} {reason} - {body}")


class StreamingUnsupportedError(RelayError):
    """The response body cannot be read incrementally."""


class PipelineBusyError(RelayError):
    """An architect or run stage is already in flight."""
