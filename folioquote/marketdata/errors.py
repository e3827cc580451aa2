"""Error taxonomy for price acquisition."""

from __future__ import annotations


class ProviderUnavailable(Exception):
    """A single provider call failed (timeout, HTTP error, bad payload, bad price)."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


class RateLimited(ProviderUnavailable):
    """Upstream answered 429; ``retry_after`` is honoured by ``utils.retry``."""

    def __init__(self, provider: str, retry_after: float | None = None) -> None:
        super().__init__(provider, "rate limited")
        self.retry_after = retry_after


class CircuitOpenError(ProviderUnavailable):
    """The provider's breaker rejected the call without invoking it."""

    def __init__(self, provider: str, retry_in: float) -> None:
        super().__init__(provider, f"circuit OPEN (retry in {retry_in:.0f}s)")
        self.retry_in = retry_in


class ConfirmationRequired(Exception):
    """A destructive operation was requested without explicit confirmation."""
