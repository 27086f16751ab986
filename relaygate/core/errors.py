"""Project error hierarchy."""

from __future__ import annotations

from typing import Any


_DETAIL_MAX_CHARS = 600


def truncate_detail(text: str, limit: int = _DETAIL_MAX_CHARS) -> str:
    cleaned = (text or "").strip()
    if len(cleaned) <= limit:
        return cleaned
    return f"{cleaned[:limit]}..."


class RelayGateError(Exception):
    """Base error."""

    code = "relaygate_error"
    error_type = "server_error"
    http_status = 500

    def to_payload(self, param: str | None = None) -> dict[str, Any]:
        return {
            "error": {
                "message": str(self) or self.code,
                "type": self.error_type,
                "code": self.code,
                "param": param,
            }
        }


class NoModelAvailableError(RelayGateError):
    """Raised when no active model is configured at all."""

    code = "no_model_available"
    http_status = 503

    def __init__(self, message: str = "") -> None:
        super().__init__(
            message
            or "No active model is configured. Configure a provider (e.g. start Ollama and add a model to the model directory)."
        )


class UpstreamUnavailableError(RelayGateError):
    """Raised when a provider call fails before any chunk was streamed."""

    code = "upstream_unavailable"
    http_status = 502

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = int(status_code)
        self.body = truncate_detail(body)
        if self.status_code:
            message = f"upstream returned HTTP {self.status_code}"
        else:
            message = "upstream unreachable"
        if self.body:
            message = f"{message}: {self.body}"
        super().__init__(message)


class UpstreamStreamInterruptedError(RelayGateError):
    """Raised when the upstream stream ends without its terminal marker."""

    code = "upstream_stream_interrupted"
    http_status = 502

    def __init__(self, message: str = "upstream stream interrupted before completion") -> None:
        super().__init__(message)


class MalformedClientRequestError(RelayGateError):
    """Raised when the client payload misses required fields."""

    code = "invalid_request"
    error_type = "invalid_request_error"
    http_status = 400

    def __init__(self, message: str, *, param: str | None = None) -> None:
        self.param = param
        super().__init__(message)

    def to_payload(self, param: str | None = None) -> dict[str, Any]:
        return super().to_payload(param=param or self.param)


class RelayProtocolError(RelayGateError):
    """Raised when a relay tries to emit after its terminal record."""

    code = "relay_protocol_error"
