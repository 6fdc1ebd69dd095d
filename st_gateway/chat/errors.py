from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from st_gateway.core.errors import GatewayError, UpstreamFailure


@dataclass
class ChatGenerationError(Exception):
    """Structured error returned by the generate endpoint."""

    status_code: int
    message: str
    upstream_status: int | None = None
    provider: str | None = None
    request_id: str | None = None

    def to_error(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": True}
        if self.provider is not None:
            body["provider"] = self.provider
        body["status"] = self.status_code if self.upstream_status is None else self.upstream_status
        body["message"] = self.message
        body["requestId"] = self.request_id
        return body


def map_generation_error(exc: Exception, request_id: str | None = None) -> ChatGenerationError:
    if isinstance(exc, ChatGenerationError):
        if exc.request_id is None:
            exc.request_id = request_id
        return exc

    if isinstance(exc, UpstreamFailure):
        return ChatGenerationError(
            status_code=502,
            message=exc.message,
            upstream_status=exc.upstream_status,
            provider=exc.provider,
            request_id=request_id,
        )

    if isinstance(exc, GatewayError):
        return ChatGenerationError(
            status_code=exc.status_code,
            message=exc.message,
            request_id=request_id,
        )

    return ChatGenerationError(
        status_code=500,
        message="Generation failed",
        request_id=request_id,
    )
