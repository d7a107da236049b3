"""Structured error taxonomy for the newsstack_ai analysis pipeline.

Provides a custom exception hierarchy so callers can catch specific
failure modes (model transport errors, unparseable model output, market
data gaps, quota rejections) without resorting to bare ``Exception``.

Model errors are *values* inside the gateway: ``ModelGateway.call``
returns them on a failed ``ModelResult`` instead of raising, and each
carries the token usage that was billed before the failure so the cost
ledger can still account for it.
"""
from __future__ import annotations

from typing import Any

from .common_types import ZERO_USAGE, ModelRole, Usage


class NewsstackError(Exception):
    """Base error for all newsstack_ai subsystems."""
    pass


class ConfigError(NewsstackError):
    """Invalid configuration value."""
    pass


class InvalidNewsItem(NewsstackError):
    """A submitted news item cannot be analysed (no text, bad id, …)."""
    pass


class CostInvariantError(NewsstackError):
    """A cost total diverges from the sum of its lines."""
    pass


class SchemaError(NewsstackError):
    """Parsed model output does not satisfy the expected stage schema."""

    def __init__(self, message: str, *, field: str = ""):
        self.field = field
        super().__init__(message)


# ---------------------------------------------------------------------------
# Model errors
# ---------------------------------------------------------------------------

class ModelError(NewsstackError):
    """A reasoning-model call failed.  ``retryable`` drives gateway retries."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        role: ModelRole | None = None,
        status_code: int | None = None,
        usage: Usage = ZERO_USAGE,
    ):
        self.role = role
        self.status_code = status_code
        self.usage = usage
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": str(self),
            "role": self.role.value if self.role else None,
            "status_code": self.status_code,
        }


class ModelTimeout(ModelError):
    retryable = True


class ModelRateLimited(ModelError):
    """HTTP 429.  ``retry_after_s`` is None when the provider sent no hint."""

    retryable = True

    def __init__(self, message: str, *, retry_after_s: float | None = None, **kwargs: Any):
        self.retry_after_s = retry_after_s
        super().__init__(message, **kwargs)


class ModelClientError(ModelError):
    """4xx other than 429: the request itself is wrong, never retried."""

    retryable = False


class ModelServerError(ModelError):
    """5xx or network failure, retried with backoff."""

    retryable = True


class ParseError(ModelError):
    """Model output was unusable after one recovery attempt.

    ``raw_text`` is truncated for diagnostics.
    """

    retryable = False

    def __init__(self, message: str, *, raw_text: str = "", **kwargs: Any):
        self.raw_text = raw_text
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["raw_text"] = self.raw_text
        return d


# ---------------------------------------------------------------------------
# Non-model errors
# ---------------------------------------------------------------------------

class MarketDataMiss(NewsstackError):
    """A price snapshot could not be fetched.  Tolerated by enrichment."""

    def __init__(self, message: str, *, symbol: str = ""):
        self.symbol = symbol
        super().__init__(message)


class DuplicateClaim(NewsstackError):
    """Another worker is analysing the same news id right now.

    Not a failure: the other worker's result will be persisted once.
    """

    def __init__(self, news_id: str, *, retry_after_s: float = 0.0):
        self.news_id = news_id
        self.retry_after_s = retry_after_s
        super().__init__(f"analysis of {news_id} already in progress")


class QuotaExceeded(NewsstackError):
    """On-demand caller exceeded its request quota for the current window."""

    def __init__(self, caller_id: str, *, retry_after_s: float):
        self.caller_id = caller_id
        self.retry_after_s = retry_after_s
        super().__init__(
            f"quota exceeded for {caller_id!r}; retry after {retry_after_s:.1f}s"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "QuotaExceeded",
            "caller_id": self.caller_id,
            "retry_after_s": round(self.retry_after_s, 3),
        }
