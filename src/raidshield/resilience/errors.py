"""Exceptions raised by the resilient execution layer.

Both are retryable: the connector should back off and try again.
"""


class ResilienceError(Exception):
    """Base class for circuit breaker errors."""

    pass


class CircuitOpenError(ResilienceError):
    """The circuit is open and calls are failing fast."""

    def __init__(self, retry_after: float, message: str | None = None) -> None:
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            message
            or f"Circuit breaker is OPEN. Service unavailable. Retry in {self.retry_after:.0f}s"
        )


class OperationTimeoutError(ResilienceError):
    """A guarded call exceeded its hard timeout."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Operation '{operation}' timed out after {timeout:.1f}s")
