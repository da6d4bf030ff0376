"""Unit tests for the CircuitGuard circuit breaker and failover."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from raidshield.config import Settings
from raidshield.resilience.circuit import (
    PRIMARY,
    CircuitConfig,
    CircuitGuard,
    CircuitState,
)
from raidshield.resilience.errors import CircuitOpenError, OperationTimeoutError


class Service:
    """Stand-in instance whose ``call`` can be made to fail."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.call = AsyncMock(return_value=name)


async def call(service: Service) -> str:
    return await service.call()


@pytest.fixture
def services() -> list[Service]:
    return [Service("primary"), Service("backup-0"), Service("backup-1")]


@pytest.fixture
def guard(services, clock) -> CircuitGuard[Service]:
    config = CircuitConfig(error_threshold=3, reset_timeout=60, half_open_max_attempts=2)
    return CircuitGuard(services[0], services[1:], config=config, name="test", clock=clock)


async def fail_times(guard: CircuitGuard[Service], n: int) -> None:
    for _ in range(n):
        guard.active.call.side_effect = RuntimeError("boom")
        with pytest.raises(RuntimeError):
            await guard.invoke("call", call)


# =========================================================================
# 1. CLOSED -> OPEN
# =========================================================================


class TestOpening:
    """Tests for tripping the breaker."""

    @pytest.mark.asyncio
    async def test_successful_call_passes_through(self, guard) -> None:
        assert await guard.invoke("call", call) == "primary"
        assert guard.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_threshold_failures_open_and_fail_over(self, guard, services) -> None:
        await fail_times(guard, 3)
        assert guard.state == CircuitState.OPEN
        assert guard.active_instance == 0
        assert guard.active is services[1]
        assert guard.failover_count == 1

    @pytest.mark.asyncio
    async def test_below_threshold_stays_closed(self, guard) -> None:
        await fail_times(guard, 2)
        assert guard.state == CircuitState.CLOSED
        assert guard.active_instance == PRIMARY

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, guard) -> None:
        await fail_times(guard, 2)
        guard.active.call.side_effect = None
        await guard.invoke("call", call)
        await fail_times(guard, 2)
        assert guard.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self, guard, services, clock) -> None:
        await fail_times(guard, 3)
        clock.advance(20)
        with pytest.raises(CircuitOpenError) as exc_info:
            await guard.invoke("call", call)
        assert exc_info.value.retry_after == pytest.approx(40)
        assert "Circuit breaker is OPEN" in str(exc_info.value)
        services[1].call.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, services, clock) -> None:
        async def slow(service: Service) -> None:
            await asyncio.sleep(1)

        config = CircuitConfig(error_threshold=1, call_timeout=0.01)
        guard = CircuitGuard(services[0], services[1:], config=config, clock=clock)
        with pytest.raises(OperationTimeoutError) as exc_info:
            await guard.invoke("slow_op", slow)
        assert exc_info.value.operation == "slow_op"
        assert guard.state == CircuitState.OPEN


# =========================================================================
# 2. HALF_OPEN probing
# =========================================================================


class TestHalfOpen:
    """Tests for recovery probing."""

    @pytest.mark.asyncio
    async def test_reset_timeout_moves_to_half_open(self, guard, clock) -> None:
        await fail_times(guard, 3)
        clock.advance(60)
        await guard.invoke("call", call)
        assert guard.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_enough_successes_close_and_restore(self, guard, clock, services) -> None:
        restored = []
        guard.on_restore(restored.append)
        await fail_times(guard, 3)
        clock.advance(60)

        assert await guard.invoke("call", call) == "backup-0"
        assert await guard.invoke("call", call) == "backup-0"

        assert guard.state == CircuitState.CLOSED
        assert guard.active_instance == PRIMARY
        assert restored[0].from_instance == 0
        assert restored[0].to_instance == PRIMARY
        services[0].call.side_effect = None
        assert await guard.invoke("call", call) == "primary"

    @pytest.mark.asyncio
    async def test_probe_failure_reopens_and_advances(self, guard, clock, services) -> None:
        await fail_times(guard, 3)
        clock.advance(60)
        await fail_times(guard, 1)
        assert guard.state == CircuitState.OPEN
        assert guard.active is services[2]
        assert guard.failover_count == 2

    @pytest.mark.asyncio
    async def test_failover_wraps_around_backups(self, guard, clock) -> None:
        await fail_times(guard, 3)
        for expected in (1, 0, 1):
            clock.advance(60)
            await fail_times(guard, 1)
            assert guard.active_instance == expected

    @pytest.mark.asyncio
    async def test_saturated_probing_rejected(self, services, clock) -> None:
        gate = asyncio.Event()

        async def blocked(service: Service) -> str:
            await gate.wait()
            return service.name

        config = CircuitConfig(error_threshold=1, reset_timeout=10, half_open_max_attempts=1)
        guard = CircuitGuard(services[0], services[1:], config=config, clock=clock)
        await fail_times(guard, 1)
        clock.advance(10)

        probe = asyncio.create_task(guard.invoke("probe", blocked))
        await asyncio.sleep(0)
        with pytest.raises(CircuitOpenError):
            await guard.invoke("call", call)
        gate.set()
        assert await probe == "backup-0"
        assert guard.state == CircuitState.CLOSED


# =========================================================================
# 3. Degraded operation and operator controls
# =========================================================================


class TestDegradedAndControls:
    @pytest.mark.asyncio
    async def test_no_backups_runs_degraded(self, clock) -> None:
        service = Service("only")
        guard = CircuitGuard(service, config=CircuitConfig(error_threshold=1), clock=clock)
        await fail_times(guard, 1)
        assert guard.state == CircuitState.OPEN
        assert guard.active_instance == PRIMARY
        assert guard.failover_count == 0
        assert guard.health()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_callback_errors_are_swallowed(self, guard) -> None:
        broken = MagicMock(side_effect=RuntimeError("callback bug"))
        seen = []
        guard.on_failover(broken)
        guard.on_failover(seen.append)
        await fail_times(guard, 3)
        broken.assert_called_once()
        assert seen[0].kind == "failover"
        assert seen[0].from_instance == PRIMARY

    def test_force_failover_keeps_state(self, guard) -> None:
        assert guard.force_failover("maintenance") == 0
        assert guard.state == CircuitState.CLOSED
        assert guard.health()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_force_restore(self, guard) -> None:
        await fail_times(guard, 3)
        guard.force_restore()
        assert guard.state == CircuitState.CLOSED
        assert guard.active_instance == PRIMARY

    @pytest.mark.asyncio
    async def test_reset_clears_metrics(self, guard) -> None:
        await fail_times(guard, 3)
        guard.reset()
        metrics = guard.circuit_metrics()
        assert guard.state == CircuitState.CLOSED
        assert metrics.total_calls == 0
        assert metrics.recent_failures == 0
        # reset does not move routing
        assert guard.active_instance == 0


# =========================================================================
# 4. Metrics and monitor
# =========================================================================


class TestMetrics:
    @pytest.mark.asyncio
    async def test_error_rate_and_budget(self, guard) -> None:
        for _ in range(3):
            await guard.invoke("call", call)
        await fail_times(guard, 1)
        metrics = guard.circuit_metrics()
        assert metrics.total_calls == 4
        assert metrics.error_rate == pytest.approx(0.25)
        assert metrics.error_budget_remaining == 0.0
        assert not guard.is_healthy()
        assert guard.health()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_history_window(self, guard, clock) -> None:
        await fail_times(guard, 1)
        clock.advance(hours=2)
        metrics = guard.circuit_metrics()
        assert metrics.total_calls == 0
        assert metrics.recent_failures == 0
        assert guard.is_healthy()

    def test_metrics_dict(self, guard) -> None:
        data = guard.circuit_metrics().to_dict()
        assert data["state"] == "closed"
        assert data["active_instance"] == "primary"

    @pytest.mark.asyncio
    async def test_monitor_moves_open_to_half_open(self, guard, clock) -> None:
        guard._config.monitor_interval = 0.01
        await fail_times(guard, 3)
        clock.advance(60)
        await guard.start()
        await asyncio.sleep(0.05)
        await guard.stop()
        assert guard.state == CircuitState.HALF_OPEN

    def test_config_from_settings(self) -> None:
        settings = Settings(circuit_error_threshold=7, circuit_reset_timeout=30.0)
        config = CircuitConfig.from_settings(settings)
        assert config.error_threshold == 7
        assert config.reset_timeout == 30.0
