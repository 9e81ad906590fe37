from __future__ import annotations


class XbrchError(Exception):
    """Base error for XBRCH."""


class ProviderConfigError(XbrchError):
    """Missing or invalid oracle provider configuration."""


class OracleError(XbrchError):
    """Oracle request failed, timed out, or returned an unusable body."""


class QuotaExceededError(XbrchError):
    """Monthly broadcast quota is exhausted for the tenant."""

    def __init__(self, *, used: int, limit: int) -> None:
        super().__init__(f"Monthly limit reached ({used}/{limit})")
        self.used = used
        self.limit = limit


class InvalidTransitionError(XbrchError):
    """Broadcast status change is not allowed from the current status."""


class DatabaseError(XbrchError):
    """Database layer failure."""
