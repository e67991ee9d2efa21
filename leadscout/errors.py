"""Error taxonomy for a lead discovery run.

Rate limits are absorbed by key rotation, single source failures are
logged and skipped, exhausted capabilities are halted for the rest of the
run, and cancellation always wins over everything else.
"""

from __future__ import annotations

from typing import Optional


class LeadScoutError(Exception):
    pass


class ConfigurationError(LeadScoutError):
    """Fatal: the run cannot start (no credentials, invalid preferences)."""


class RateLimitError(LeadScoutError):
    """A single credential hit a rate limit, quota or auth failure."""

    def __init__(self, service: str, status: Optional[int] = None, message: str = ""):
        self.service = service
        self.status = status
        super().__init__(message or f"{service} rate limited (status={status})")


class PoolExhausted(LeadScoutError):
    """Every key of one service is exhausted, including the reset probe."""

    def __init__(self, service: str, last_error: str = ""):
        self.service = service
        self.last_error = last_error
        super().__init__(
            f"All {service} API keys have hit rate limits. Wait until they reset or add new keys."
        )


class ResourceExhausted(LeadScoutError):
    """All services backing a capability are exhausted for this run."""

    def __init__(self, capability: str, services: Optional[list[str]] = None):
        self.capability = capability
        self.services = list(services or [])
        joined = ", ".join(self.services) or capability
        super().__init__(f"Resource exhausted: {capability} ({joined})")


class SourceError(LeadScoutError):
    """One source call failed in a way retrying will not fix."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class GenerationUnavailable(LeadScoutError):
    """No text generation credentials configured."""


class RunCancelled(LeadScoutError):
    """Raised at suspension points once the run's cancel token fired."""
