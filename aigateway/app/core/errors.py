"""Gateway error taxonomy.

Every error carries a stable ``code`` and an HTTP ``status_code`` so the
exception handlers in ``main`` can render ``{code, message, request_id}``.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field


@dataclass(eq=False)
class GatewayError(Exception):
    code: str
    message: str
    status_code: int = 500
    detail: dict | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_payload(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class ConfigurationError(GatewayError):
    def __init__(self, message: str):
        super().__init__("CONFIGURATION_ERROR", message, 500)


class ProviderUnavailable(GatewayError):
    def __init__(self, message: str, provider_id: str | None = None):
        super().__init__("PROVIDER_UNAVAILABLE", message, 503)
        self.provider_id = provider_id


class ProviderProtocolError(GatewayError):
    def __init__(self, message: str, provider_id: str | None = None, upstream_status: int | None = None):
        detail = {"upstream_status": upstream_status} if upstream_status else None
        super().__init__("PROVIDER_ERROR", message, 502, detail)
        self.provider_id = provider_id
        self.upstream_status = upstream_status


class RateLimited(GatewayError):
    def __init__(self, retry_after: float):
        seconds = max(1, math.ceil(retry_after))
        super().__init__(
            "RATE_LIMITED",
            f"Too many requests; retry in {seconds} second{'s' if seconds != 1 else ''}",
            429,
            {"retry_after": seconds},
        )
        self.retry_after = seconds

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message, "retry_after": self.retry_after}


class ValidationError(GatewayError):
    """Rejected upload. ``reason`` is one of empty, too_large, unsupported_format, type_mismatch."""

    def __init__(self, reason: str, message: str):
        super().__init__("VALIDATION_ERROR", message, 422, {"reason": reason})
        self.reason = reason


class SessionNotFound(GatewayError):
    def __init__(self, session_id: str):
        super().__init__("SESSION_NOT_FOUND", "Session not found or already finished", 404)
        self.session_id = session_id


@dataclass(eq=False)
class StreamError(GatewayError):
    """Terminal stream condition. Reported as an ``error`` event, never raised to HTTP."""

    partial_content: str = field(default="", repr=False)


class StreamTimeout(StreamError):
    def __init__(self, limit_seconds: float, partial_content: str = ""):
        super().__init__(
            "STREAM_TIMEOUT",
            f"Generation exceeded the {limit_seconds:g}s time limit",
            504,
            None,
            partial_content,
        )


class StreamStalled(StreamError):
    def __init__(self, idle_seconds: float, partial_content: str = ""):
        super().__init__(
            "STREAM_STALLED",
            f"Provider sent nothing for {idle_seconds:g}s",
            504,
            None,
            partial_content,
        )


class ResponseTooLarge(StreamError):
    def __init__(self, max_bytes: int, partial_content: str = ""):
        super().__init__(
            "RESPONSE_TOO_LARGE",
            f"Response truncated at {max_bytes} bytes",
            200,
            None,
            partial_content,
        )


class CancelledByCaller(StreamError):
    def __init__(self, partial_content: str = ""):
        super().__init__("CANCELLED", "Generation cancelled", 499, None, partial_content)
