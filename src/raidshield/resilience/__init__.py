"""Resilient execution: circuit breaker with failover between instances.

Public API
----------
- :class:`CircuitGuard`: breaker around a primary plus ordered backups
- :class:`ResilientPipeline`: DetectionPipeline operations through a guard
- :class:`CircuitOpenError`, :class:`OperationTimeoutError`: retryable errors
"""

from raidshield.resilience.circuit import (
    PRIMARY,
    CircuitConfig,
    CircuitGuard,
    CircuitMetrics,
    CircuitState,
    FailoverEvent,
)
from raidshield.resilience.errors import CircuitOpenError, OperationTimeoutError, ResilienceError
from raidshield.resilience.facade import ResilientPipeline

__all__ = [
    "PRIMARY",
    "CircuitConfig",
    "CircuitGuard",
    "CircuitMetrics",
    "CircuitOpenError",
    "CircuitState",
    "FailoverEvent",
    "OperationTimeoutError",
    "ResilienceError",
    "ResilientPipeline",
]
