"""Exception types raised across component boundaries."""

from __future__ import annotations

# HTTP statuses worth retrying: request timeout, conflict, rate limit, server errors.
RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})


class ParleyError(Exception):
    """Base class for Parley errors."""


class ConfigError(ParleyError):
    """Configuration is unusable (e.g. no models configured)."""


class ModelProviderError(ParleyError):
    """A model provider call failed.

    ``retryable`` separates transient failures (network, rate limits, server
    errors) from terminal ones (auth, invalid request) so callers can decide
    between backoff, model fallback, or surfacing the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        status_code: int | None = None,
        model: str | None = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
        self.model = model

    @classmethod
    def from_status(cls, status_code: int, body: str, model: str | None = None) -> ModelProviderError:
        return cls(
            f"HTTP {status_code}: {body[:300]}",
            retryable=status_code in RETRYABLE_STATUS_CODES or status_code >= 500,
            status_code=status_code,
            model=model,
        )


class SandboxUnavailableError(ParleyError):
    """The container runtime is unavailable and unsandboxed fallback is not allowed."""
