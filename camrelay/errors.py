"""Error kinds shared by the camera store, lifecycle, reload and status layers."""

from __future__ import annotations


class CamRelayError(Exception):
    """Base class for failures the HTTP layer knows how to report."""

    kind = "error"

    def __init__(self, message: str, *, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(CamRelayError):
    kind = "not_found"


class AlreadyExists(CamRelayError):
    kind = "already_exists"


class InvalidInput(CamRelayError):
    kind = "invalid_input"


class InvalidState(CamRelayError):
    kind = "invalid_state"


class ConfigIOError(CamRelayError):
    """Raised when the relay configuration cannot be read, parsed or written."""

    kind = "config_io"


class UpstreamUnavailable(CamRelayError):
    """The relay query API could not be reached after all retries."""

    kind = "upstream_unavailable"


class UpstreamHTTPError(UpstreamUnavailable):
    """The relay query API answered with a non-retryable status."""

    kind = "upstream_http"

    def __init__(self, status: int, reason: str = "", *, url: str = "") -> None:
        super().__init__(f"HTTP {status}: {reason}".rstrip(": "), details=url or None)
        self.status = status
        self.reason = reason
        self.url = url
