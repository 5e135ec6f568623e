"""Gateway error taxonomy."""
from typing import Optional


class GatewayError(Exception):
    """Base class for every failure the gateway reports."""


class RateLimited(GatewayError):
    """Raised when an identity exceeds its request quota."""

    def __init__(self, retry_after_seconds: int, scope: str = "minute"):
        self.retry_after_seconds = int(retry_after_seconds)
        self.scope = scope
        super().__init__(f"Rate limit exceeded ({scope}); retry after {self.retry_after_seconds}s")


class ValidationRejected(GatewayError):
    """Raised when SQL fails the whitelist validator. The SQL is never executed."""

    def __init__(self, reason: str, sql: Optional[str] = None):
        self.reason = reason
        self.sql = sql
        super().__init__(f"Generated SQL not allowed: {reason}")


class GeneratorError(GatewayError):
    """Remote generator timed out, failed in transport, or returned nothing."""


class ExecutionError(GatewayError):
    """Raised when the store fails to run a validated query."""
