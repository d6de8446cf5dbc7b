"""Error taxonomy for the relay.

Every error that can reach a client derives from ``RelayError`` and carries
the HTTP status and machine-readable code used when it is rendered as a JSON
error body. ``MalformedFragmentError`` never leaves the reassembler.
"""

from __future__ import annotations

BODY_EXCERPT_CHARS = 500


class RelayError(Exception):
    status_code: int = 500
    code: str = "RELAY_ERROR"

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "details": self.details,
            "code": self.code,
        }


class ConfigurationError(RelayError):
    code = "CONFIGURATION_ERROR"


class UpstreamError(RelayError):
    """Failure establishing or reading the upstream call."""

    status_code = 502
    code = "UPSTREAM_ERROR"


class UpstreamHttpError(UpstreamError):
    status_code = 500
    code = "UPSTREAM_HTTP_ERROR"

    def __init__(self, upstream_status: int, body: str):
        self.upstream_status = upstream_status
        self.body_excerpt = body[:BODY_EXCERPT_CHARS]
        super().__init__(
            f"Gemini API error ({upstream_status})",
            details=self.body_excerpt or None,
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["upstream_status"] = self.upstream_status
        return data


class UpstreamEmptyBodyError(UpstreamError):
    code = "UPSTREAM_EMPTY_BODY"

    def __init__(self):
        super().__init__("Gemini API returned an empty response body")


class UpstreamTimeoutError(UpstreamError):
    status_code = 504
    code = "UPSTREAM_TIMEOUT"


class UpstreamConnectionError(UpstreamError):
    code = "UPSTREAM_CONNECTION_ERROR"


class SafetyBlockedError(RelayError):
    status_code = 422
    code = "SAFETY_BLOCKED"

    def __init__(self):
        super().__init__(
            "Sorry, your request touches on sensitive content and no reply can be generated"
        )


class EmptyCandidateError(RelayError):
    status_code = 502
    code = "EMPTY_CANDIDATE"


class MalformedFragmentError(ValueError):
    """A candidate JSON span from the upstream stream could not be parsed."""

    def __init__(self, span: str, reason: str):
        super().__init__(f"malformed fragment: {reason}")
        self.span = span
        self.reason = reason
