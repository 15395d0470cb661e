"""Circuit breaker over the persisted error window.

The breaker trips when ``failures / window_size >= failure_ratio``.
Tripping pauses an Active run with reason CIRCUIT_BREAKER and sends a
critical alert. It never closes on its own: a human Resume clears the
window (see ``AutonomousManager.resume``).
"""

from typing import Iterable, Optional

import structlog

from ..notifications import Channel, NotificationDispatcher
from .database import StateStore
from .models import ControlSignal, OutcomeEvent, PauseReason, RunSettings, RunState

logger = structlog.get_logger("yolo.loop")


class ErrorWindow:
    """Read-only view of the newest N outcome events."""

    def __init__(self, outcomes: Iterable[OutcomeEvent], size: int):
        self.outcomes = list(outcomes)[:size]
        self.size = size

    @property
    def failures(self) -> int:
        return sum(1 for o in self.outcomes if not o.succeeded)

    @property
    def failure_ratio(self) -> float:
        return self.failures / self.size if self.size else 0.0

    def should_trip(self, threshold: float) -> bool:
        return self.failure_ratio >= threshold


class CircuitBreaker:
    """Feeds outcomes into the error window and pauses the run on trip."""

    def __init__(self, store: StateStore, notifier: Optional[NotificationDispatcher] = None):
        self.store = store
        self.notifier = notifier

    async def window(self, settings: RunSettings) -> ErrorWindow:
        outcomes = await self.store.recent_outcomes(settings.breaker_window_size)
        return ErrorWindow(outcomes, settings.breaker_window_size)

    async def record(self, event: OutcomeEvent, settings: RunSettings) -> bool:
        """Record one outcome. Returns True if this outcome tripped the breaker."""
        await self.store.record_outcome(event, retention=settings.breaker_window_size)
        window = await self.window(settings)

        if not event.succeeded:
            logger.info(
                "failure_recorded",
                source=event.source,
                failures=window.failures,
                window_size=window.size,
            )

        if window.should_trip(settings.breaker_failure_ratio):
            return await self.trip(
                f"{window.failures} failures in the last {window.size} outcomes "
                f"(threshold {settings.breaker_failure_ratio:.0%})"
            )
        return False

    async def trip(self, detail: str) -> bool:
        """Pause an Active run and alert. Returns True if the run was paused."""
        state, _ = await self.store.get_run_state()
        paused = False
        if state == RunState.ACTIVE:
            await self.store.apply_signal(
                ControlSignal.PAUSE, reason=PauseReason.CIRCUIT_BREAKER
            )
            paused = True

        logger.critical("circuit_breaker_tripped", detail=detail, run_state=state.value)
        if self.notifier:
            self.notifier.notify(
                Channel.CRITICAL,
                f"Circuit breaker tripped: {detail}. Autonomous run paused; resume manually.",
            )
        return paused

    async def reset(self) -> None:
        await self.store.clear_outcomes()
        logger.info("circuit_breaker_reset")
