"""Circuit breaker with failover across redundant service instances.

States move only CLOSED -> OPEN -> HALF_OPEN -> (CLOSED | OPEN):

- CLOSED: calls go to the active instance. ``error_threshold`` consecutive
  failures open the circuit and fail over to the next backup.
- OPEN: calls fail fast with :class:`CircuitOpenError`. Once
  ``reset_timeout`` has elapsed the next call (or the recovery monitor)
  moves to HALF_OPEN.
- HALF_OPEN: up to ``half_open_max_attempts`` calls are let through. Any
  failure re-opens and advances failover; that many successes close the
  circuit, restoring the primary if a backup was active.

Failover goes primary -> backup[0] -> backup[1] -> ... -> backup[0]. The
primary is only re-selected by a restore.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Generic, Literal, TypeVar

from raidshield.config import Settings
from raidshield.logging import get_logger
from raidshield.resilience.errors import CircuitOpenError, OperationTimeoutError

log = get_logger("raidshield.resilience.circuit")

T = TypeVar("T")
R = TypeVar("R")

PRIMARY: Literal["primary"] = "primary"
InstanceRef = Literal["primary"] | int

# Call history used for error rate and latency metrics
_HISTORY_WINDOW_SECONDS = 3600
_HISTORY_MAX_ENTRIES = 10000
# Rolling failure timestamps older than this are dropped
_FAILURE_WINDOW_SECONDS = 300


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_TRANSITION_EVENTS: dict[CircuitState, str] = {
    CircuitState.CLOSED: "circuit_closed",
    CircuitState.OPEN: "circuit_opened",
    CircuitState.HALF_OPEN: "circuit_half_opened",
}


@dataclass
class CircuitConfig:
    """Tuning knobs for :class:`CircuitGuard`."""

    error_threshold: int = 5
    call_timeout: float = 5.0
    reset_timeout: float = 60.0
    half_open_max_attempts: int = 3
    rolling_window_size: int = 100
    error_budget: float = 0.1
    monitor_interval: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> CircuitConfig:
        return cls(
            error_threshold=settings.circuit_error_threshold,
            call_timeout=settings.circuit_call_timeout,
            reset_timeout=settings.circuit_reset_timeout,
            half_open_max_attempts=settings.circuit_half_open_max_attempts,
            rolling_window_size=settings.circuit_rolling_window_size,
            error_budget=settings.circuit_error_budget,
            monitor_interval=settings.circuit_monitor_interval,
        )


@dataclass(frozen=True)
class CallRecord:
    timestamp: float
    duration_ms: float
    success: bool


@dataclass(frozen=True)
class FailoverEvent:
    """Passed to failover and restore callbacks."""

    kind: Literal["failover", "restore"]
    from_instance: InstanceRef
    to_instance: InstanceRef
    reason: str
    timestamp: float


@dataclass
class CircuitMetrics:
    state: CircuitState
    active_instance: InstanceRef
    failure_count: int
    success_count: int
    total_calls: int
    error_rate: float
    average_latency_ms: float
    error_budget_remaining: float
    recent_failures: int
    failover_count: int
    last_transition_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "active_instance": self.active_instance,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "total_calls": self.total_calls,
            "error_rate": round(self.error_rate, 4),
            "average_latency_ms": round(self.average_latency_ms, 2),
            "error_budget_remaining": round(self.error_budget_remaining, 4),
            "recent_failures": self.recent_failures,
            "failover_count": self.failover_count,
            "last_transition_at": self.last_transition_at,
        }


FailoverCallback = Callable[[FailoverEvent], None]


class CircuitGuard(Generic[T]):
    """Resilient execution wrapper around a primary and N backup instances.

    Calls are made through :meth:`invoke`, which hands the active instance to
    the supplied coroutine function. The wrapper never inspects the instance.
    """

    def __init__(
        self,
        primary: T,
        backups: Sequence[T] = (),
        *,
        config: CircuitConfig | None = None,
        name: str = "service",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._primary = primary
        self._backups = list(backups)
        self._config = config or CircuitConfig()
        self._name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._active: InstanceRef = PRIMARY
        self._failure_count = 0
        self._success_count = 0
        self._half_open_in_flight = 0
        self._opened_at = 0.0
        self._last_transition_at = clock()
        self._failover_count = 0
        self._rolling_failures: deque[float] = deque(maxlen=self._config.rolling_window_size)
        self._history: deque[CallRecord] = deque(maxlen=_HISTORY_MAX_ENTRIES)

        self._failover_callbacks: list[FailoverCallback] = []
        self._restore_callbacks: list[FailoverCallback] = []

        self._running = False
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def active_instance(self) -> InstanceRef:
        return self._active

    @property
    def failover_count(self) -> int:
        return self._failover_count

    @property
    def active(self) -> T:
        """The instance calls are currently routed to."""
        if self._active == PRIMARY:
            return self._primary
        return self._backups[self._active]

    @property
    def instances(self) -> list[T]:
        return [self._primary, *self._backups]

    def is_healthy(self) -> bool:
        return (
            self._state == CircuitState.CLOSED
            and self._error_rate(self._recent_history()) <= self._config.error_budget
        )

    def circuit_metrics(self) -> CircuitMetrics:
        history = self._recent_history()
        error_rate = self._error_rate(history)
        average_latency = (
            sum(r.duration_ms for r in history) / len(history) if history else 0.0
        )
        self._prune_failures()
        return CircuitMetrics(
            state=self._state,
            active_instance=self._active,
            failure_count=self._failure_count,
            success_count=self._success_count,
            total_calls=len(history),
            error_rate=error_rate,
            average_latency_ms=average_latency,
            error_budget_remaining=max(0.0, self._config.error_budget - error_rate),
            recent_failures=len(self._rolling_failures),
            failover_count=self._failover_count,
            last_transition_at=self._last_transition_at,
        )

    def health(self) -> dict[str, Any]:
        metrics = self.circuit_metrics()
        status = "healthy"
        if self._state == CircuitState.OPEN:
            status = "unhealthy"
        elif self._state == CircuitState.HALF_OPEN or self._active != PRIMARY:
            status = "degraded"
        elif metrics.error_budget_remaining <= 0 and metrics.total_calls:
            status = "degraded"
        return {
            "name": self._name,
            "status": status,
            "healthy": status == "healthy",
            "backups_configured": len(self._backups),
            **metrics.to_dict(),
        }

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def on_failover(self, callback: FailoverCallback) -> None:
        self._failover_callbacks.append(callback)

    def on_restore(self, callback: FailoverCallback) -> None:
        self._restore_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def invoke(self, operation: str, func: Callable[[T], Awaitable[R]]) -> R:
        """Run *func* against the active instance under the breaker.

        Args:
            operation: Name used in logs, metrics and timeout errors.
            func: Coroutine function receiving the active instance.

        Returns:
            Whatever *func* returns.

        Raises:
            CircuitOpenError: The circuit is open, or HALF_OPEN probing is
                already saturated.
            OperationTimeoutError: The call exceeded ``call_timeout``.
        """
        self._maybe_half_open()

        if self._state == CircuitState.OPEN:
            retry_after = self._opened_at + self._config.reset_timeout - self._clock()
            raise CircuitOpenError(retry_after)

        half_open = self._state == CircuitState.HALF_OPEN
        if half_open:
            admitted = self._half_open_in_flight + self._success_count
            if admitted >= self._config.half_open_max_attempts:
                raise CircuitOpenError(
                    self._config.reset_timeout,
                    "Circuit breaker is HALF_OPEN and probing is saturated. Retry shortly",
                )
            self._half_open_in_flight += 1

        instance = self.active
        start = self._clock()
        perf_start = time.perf_counter()
        try:
            result = await asyncio.wait_for(func(instance), timeout=self._config.call_timeout)
        except TimeoutError:
            self._record_failure(operation, start, perf_start, "timeout")
            raise OperationTimeoutError(operation, self._config.call_timeout) from None
        except Exception as e:
            self._record_failure(operation, start, perf_start, str(e))
            raise
        finally:
            if half_open:
                self._half_open_in_flight -= 1

        self._record_success(operation, start, perf_start)
        return result

    # ------------------------------------------------------------------
    # Operator controls
    # ------------------------------------------------------------------

    def force_failover(self, reason: str = "manual") -> InstanceRef:
        """Switch to the next backup without changing breaker state."""
        log.warning("forced_failover", circuit=self._name, reason=reason)
        self._failover(reason)
        return self._active

    def force_restore(self) -> None:
        """Route calls back to the primary and close the circuit."""
        log.warning("forced_restore", circuit=self._name)
        self._reset_counters()
        if self._state != CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)
        self._restore("manual")

    def reset(self) -> None:
        """Clear breaker state and metrics; the active instance is unchanged."""
        self._reset_counters()
        self._rolling_failures.clear()
        self._history.clear()
        if self._state != CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)
        log.info("circuit_reset", circuit=self._name)

    # ------------------------------------------------------------------
    # Recovery monitor
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background OPEN -> HALF_OPEN monitor."""
        if self._running:
            log.warning("circuit_monitor_already_running", circuit=self._name)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        log.info("circuit_monitor_started", circuit=self._name)

    async def stop(self) -> None:
        """Stop the recovery monitor."""
        self._running = False
        task = self._task
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self._task = None
        log.info("circuit_monitor_stopped", circuit=self._name)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                self._maybe_half_open()
            except Exception as e:
                log.error("circuit_monitor_error", circuit=self._name, error=str(e))
            await asyncio.sleep(self._config.monitor_interval)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _maybe_half_open(self) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self._config.reset_timeout
        ):
            self._success_count = 0
            self._transition(CircuitState.HALF_OPEN)

    def _record_success(self, operation: str, start: float, perf_start: float) -> None:
        self._history.append(
            CallRecord(start, (time.perf_counter() - perf_start) * 1000, success=True)
        )
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            log.debug(
                "circuit_probe_succeeded",
                circuit=self._name,
                operation=operation,
                successes=self._success_count,
                required=self._config.half_open_max_attempts,
            )
            if self._success_count >= self._config.half_open_max_attempts:
                self._close()
        else:
            self._failure_count = 0

    def _record_failure(self, operation: str, start: float, perf_start: float, error: str) -> None:
        now = self._clock()
        self._history.append(
            CallRecord(start, (time.perf_counter() - perf_start) * 1000, success=False)
        )
        self._rolling_failures.append(now)
        self._failure_count += 1
        log.warning(
            "circuit_call_failed",
            circuit=self._name,
            operation=operation,
            state=self._state.value,
            failure_count=self._failure_count,
            error=error,
        )

        if self._state == CircuitState.HALF_OPEN:
            self._open(f"probe failed during {operation}: {error}")
        elif (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self._config.error_threshold
        ):
            self._open(f"{self._failure_count} consecutive failures, last during {operation}")

    def _open(self, reason: str) -> None:
        self._opened_at = self._clock()
        self._failure_count = 0
        self._success_count = 0
        self._transition(CircuitState.OPEN, reason=reason)
        self._failover(reason)

    def _close(self) -> None:
        self._reset_counters()
        self._transition(CircuitState.CLOSED)
        if self._active != PRIMARY:
            self._restore("recovered")

    def _transition(self, new_state: CircuitState, reason: str = "") -> None:
        old_state = self._state
        self._state = new_state
        self._last_transition_at = self._clock()
        log_fn = log.warning if new_state == CircuitState.OPEN else log.info
        log_fn(
            _TRANSITION_EVENTS[new_state],
            circuit=self._name,
            from_state=old_state.value,
            active_instance=self._active,
            reason=reason or None,
        )

    def _reset_counters(self) -> None:
        self._failure_count = 0
        self._success_count = 0

    # ------------------------------------------------------------------
    # Failover / restore
    # ------------------------------------------------------------------

    def _failover(self, reason: str) -> None:
        if not self._backups:
            log.error(
                "failover_unavailable",
                circuit=self._name,
                reason=reason,
                note="no backups configured, running at degraded capacity",
            )
            return

        previous = self._active
        self._active = 0 if previous == PRIMARY else (previous + 1) % len(self._backups)
        self._failover_count += 1
        log.warning(
            "failover_completed",
            circuit=self._name,
            from_instance=previous,
            to_instance=self._active,
            failover_count=self._failover_count,
            reason=reason,
        )
        self._notify(
            self._failover_callbacks,
            FailoverEvent("failover", previous, self._active, reason, self._clock()),
        )

    def _restore(self, reason: str) -> None:
        previous = self._active
        if previous == PRIMARY:
            return
        self._active = PRIMARY
        log.info("restore_completed", circuit=self._name, from_instance=previous, reason=reason)
        self._notify(
            self._restore_callbacks,
            FailoverEvent("restore", previous, PRIMARY, reason, self._clock()),
        )

    def _notify(self, callbacks: list[FailoverCallback], event: FailoverEvent) -> None:
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                log.exception("circuit_callback_failed", circuit=self._name, kind=event.kind)

    # ------------------------------------------------------------------
    # Metrics helpers
    # ------------------------------------------------------------------

    def _recent_history(self) -> list[CallRecord]:
        cutoff = self._clock() - _HISTORY_WINDOW_SECONDS
        while self._history and self._history[0].timestamp < cutoff:
            self._history.popleft()
        return list(self._history)

    def _prune_failures(self) -> None:
        cutoff = self._clock() - _FAILURE_WINDOW_SECONDS
        while self._rolling_failures and self._rolling_failures[0] < cutoff:
            self._rolling_failures.popleft()

    @staticmethod
    def _error_rate(history: list[CallRecord]) -> float:
        if not history:
            return 0.0
        return sum(1 for r in history if not r.success) / len(history)
