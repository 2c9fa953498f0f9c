"""
Spending oracle error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (skip, abort, alert, etc.).
"""

from __future__ import annotations

from typing import Any, Optional


class OracleError(Exception):
    """Base error for all spending oracle operations."""
    pass


class ConfigError(OracleError):
    """Configuration is missing or invalid."""
    pass


# Event errors
class MalformedEventError(OracleError):
    """An event could not be normalized. The event is skipped, not fatal."""
    def __init__(self, message: str, raw: Optional[Any] = None):
        self.raw = raw
        super().__init__(message)


# Upstream errors
class UpstreamUnavailableError(OracleError):
    """Event source, reference store or valuation source cannot be reached.

    The whole invocation for the account is aborted and nothing is published.
    """
    pass


class RpcError(UpstreamUnavailableError):
    """JSON-RPC transport failure or error response."""
    def __init__(self, method: str, message: str, code: Optional[int] = None):
        self.method = method
        self.code = code
        detail = f" ({code})" if code is not None else ""
        super().__init__(f"RPC {method} failed{detail}: {message}")


class StaleDataError(UpstreamUnavailableError):
    """A reference read is older than the configured freshness bound."""
    def __init__(self, source: str, age_seconds: int, max_age_seconds: int):
        self.source = source
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds
        super().__init__(
            f"{source} is {age_seconds}s old (max {max_age_seconds}s)"
        )


# Replay errors
class InvariantViolationError(OracleError):
    """Replay produced an impossible state. Never clamped, always surfaced."""
    def __init__(self, message: str, account: Optional[str] = None):
        self.account = account
        prefix = f"[{account}] " if account else ""
        super().__init__(f"{prefix}{message}")


# Publish errors
class PublishError(OracleError):
    """The publish sink rejected or failed to apply an update."""
    pass
