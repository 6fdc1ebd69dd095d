from __future__ import annotations

from dataclasses import dataclass

UPSTREAM_EXCERPT_CHARS = 500


@dataclass
class GatewayError(Exception):
    status_code: int
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass
class UpstreamFailure(Exception):
    """Terminal failure of a networked branch after the retry budget is spent."""

    provider: str
    upstream_status: int
    message: str

    def __post_init__(self) -> None:
        self.message = truncate_excerpt(self.message)

    def __str__(self) -> str:
        return f"{self.provider} upstream failed with status {self.upstream_status}"


def truncate_excerpt(text: str | None) -> str:
    return str(text or "")[:UPSTREAM_EXCERPT_CHARS]
