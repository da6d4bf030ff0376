"""Bounded per-entity state owned by a single pipeline instance.

Every map is bounded twice: entries older than the time horizon are pruned,
and once the number of tracked keys exceeds the cap the oldest-inserted
keys are evicted. A periodic sweep removes idle keys so memory stays flat
under sustained load.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass

from raidshield.logging import get_logger

log = get_logger("raidshield.moderation.state")

MAX_WARNINGS = 3


class SlidingWindow:
    """Time- and size-bounded timestamped events keyed by entity."""

    def __init__(
        self,
        horizon_seconds: float,
        *,
        max_keys: int = 10000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._horizon = horizon_seconds
        self._max_keys = max_keys
        self._clock = clock
        self._events: OrderedDict[str, deque[tuple[float, str]]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, key: object) -> bool:
        return key in self._events

    def record(self, key: str, payload: str = "") -> int:
        """Append an event for *key* and return its in-horizon count."""
        now = self._clock()
        events = self._events.get(key)
        if events is None:
            events = deque()
            self._events[key] = events
            while len(self._events) > self._max_keys:
                evicted, _ = self._events.popitem(last=False)
                log.debug("sliding_window_evicted", key=evicted)
        events.append((now, payload))
        self._prune(events, now)
        return len(events)

    def count(self, key: str, within: float | None = None) -> int:
        """Count events for *key* in the last *within* seconds (default: horizon)."""
        events = self._events.get(key)
        if not events:
            return 0
        now = self._clock()
        self._prune(events, now)
        if within is None or within >= self._horizon:
            return len(events)
        cutoff = now - within
        return sum(1 for ts, _ in events if ts > cutoff)

    def count_payload(self, key: str, payload: str) -> int:
        """Count in-horizon events for *key* whose payload equals *payload*."""
        events = self._events.get(key)
        if not events:
            return 0
        self._prune(events, self._clock())
        return sum(1 for _, p in events if p == payload)

    def payloads(self, key: str, limit: int = 10) -> list[str]:
        events = self._events.get(key)
        if not events:
            return []
        return [p for _, p in list(events)[-limit:]]

    def sweep(self) -> int:
        """Drop expired events and empty keys. Returns the number of keys removed."""
        now = self._clock()
        removed = 0
        for key in list(self._events):
            events = self._events[key]
            self._prune(events, now)
            if not events:
                del self._events[key]
                removed += 1
        return removed

    def clear(self) -> None:
        self._events.clear()

    def _prune(self, events: deque[tuple[float, str]], now: float) -> None:
        cutoff = now - self._horizon
        while events and events[0][0] <= cutoff:
            events.popleft()


@dataclass
class WarningState:
    count: int = 0
    last_warning_at: float = 0.0
    muted_until: float | None = None


@dataclass(frozen=True)
class StrikeResult:
    """Outcome of recording a warning strike."""

    count: int
    muted: bool
    remaining_warnings: int
    muted_until: float | None = None


class WarningLedger:
    """Three-strike warning state per (community, entity)."""

    def __init__(
        self,
        *,
        decay_seconds: float = 24 * 3600,
        mute_seconds: float = 600,
        max_keys: int = 10000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._decay = decay_seconds
        self._mute = mute_seconds
        self._max_keys = max_keys
        self._clock = clock
        self._states: OrderedDict[tuple[str, str], WarningState] = OrderedDict()

    def __len__(self) -> int:
        return len(self._states)

    def get(self, community_id: str, entity_id: str) -> WarningState:
        """Return a snapshot of the current warning state (decay applied)."""
        state = self._states.get((community_id, entity_id))
        if state is None:
            return WarningState()
        self._decay_if_idle(state, self._clock())
        return WarningState(state.count, state.last_warning_at, state.muted_until)

    def mute_remaining(self, community_id: str, entity_id: str) -> float:
        """Seconds left on an active mute, or 0."""
        state = self._states.get((community_id, entity_id))
        if state is None or state.muted_until is None:
            return 0.0
        return max(0.0, state.muted_until - self._clock())

    def strike(self, community_id: str, entity_id: str) -> StrikeResult:
        """Record a warning; the third strike mutes and resets the counter."""
        now = self._clock()
        key = (community_id, entity_id)
        state = self._states.get(key)
        if state is None:
            state = WarningState()
            self._states[key] = state
            while len(self._states) > self._max_keys:
                self._states.popitem(last=False)
        self._decay_if_idle(state, now)

        state.count += 1
        state.last_warning_at = now
        if state.count >= MAX_WARNINGS:
            state.count = 0
            state.muted_until = now + self._mute
            return StrikeResult(
                count=MAX_WARNINGS,
                muted=True,
                remaining_warnings=0,
                muted_until=state.muted_until,
            )
        return StrikeResult(
            count=state.count,
            muted=False,
            remaining_warnings=MAX_WARNINGS - state.count,
        )

    def reset(self, community_id: str, entity_id: str) -> bool:
        return self._states.pop((community_id, entity_id), None) is not None

    def sweep(self) -> int:
        now = self._clock()
        removed = 0
        for key in list(self._states):
            state = self._states[key]
            self._decay_if_idle(state, now)
            if state.count == 0 and state.muted_until is None:
                del self._states[key]
                removed += 1
        return removed

    def clear(self) -> None:
        self._states.clear()

    def _decay_if_idle(self, state: WarningState, now: float) -> None:
        if state.muted_until is not None and state.muted_until <= now:
            state.muted_until = None
        if state.count and now - state.last_warning_at >= self._decay:
            state.count = 0


class ModerationState:
    """All mutable tracking state for one pipeline instance.

    Constructed explicitly and passed into the pipeline. ``start()`` launches
    the periodic sweep; ``stop()`` cancels it.
    """

    def __init__(
        self,
        *,
        max_tracked_entities: int = 10000,
        sweep_interval: float = 300,
        warning_decay_seconds: float = 24 * 3600,
        mute_seconds: float = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.messages = SlidingWindow(60, max_keys=max_tracked_entities, clock=clock)
        self.joins = SlidingWindow(3600, max_keys=max_tracked_entities, clock=clock)
        self.warnings = WarningLedger(
            decay_seconds=warning_decay_seconds,
            mute_seconds=mute_seconds,
            max_keys=max_tracked_entities,
            clock=clock,
        )
        self._sweep_interval = sweep_interval
        self._running = False
        self._task: asyncio.Task[None] | None = None

    def sweep(self) -> dict[str, int]:
        removed = {
            "messages": self.messages.sweep(),
            "joins": self.joins.sweep(),
            "warnings": self.warnings.sweep(),
        }
        log.debug("state_swept", **removed)
        return removed

    def clear(self) -> None:
        self.messages.clear()
        self.joins.clear()
        self.warnings.clear()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._running = False
        task = self._task
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self._task = None

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                log.error("state_sweep_failed", error=str(e))
