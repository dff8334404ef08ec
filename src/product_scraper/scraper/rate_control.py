"""Adaptive inter-request delay for one job.

A small state machine with three pieces of state: the current delay, an
exponentially weighted moving average of response latency, and the error
count of the current batch window.  The scheduler calls :meth:`record` after
every request and :meth:`adjust` after every batch:

- errors above ``error_rate_threshold`` or a slow average -> ``BACKING_OFF``,
  delay multiplied by ``grow_factor`` (up to ``max_delay_ms``);
- a fast average with no errors -> ``SPEEDING_UP``, delay multiplied by
  ``shrink_factor`` (down to ``min_delay_ms``);
- anything else -> ``STEADY``, delay unchanged.

Typical usage::

    delay = AdaptiveDelay(base_delay_ms=200, config=AdaptiveDelayConfig(max_delay_ms=5000))
    await asyncio.sleep(delay.current_seconds)
    delay.record(0.42, ok=True)
    ...
    delay.adjust()
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class DelayState(str, enum.Enum):
    STEADY = "steady"
    SPEEDING_UP = "speeding_up"
    BACKING_OFF = "backing_off"


@dataclass(frozen=True)
class AdaptiveDelayConfig:
    """Tuning for :class:`AdaptiveDelay`.

    Attributes:
        min_delay_ms: Floor of the delay.
        max_delay_ms: Ceiling of the delay.
        fast_latency_ms: Average latency under which the delay shrinks.
        slow_latency_ms: Average latency over which the delay grows.
        shrink_factor: Multiplier applied when speeding up (< 1).
        grow_factor: Multiplier applied when backing off (> 1).
        error_rate_threshold: Failed fraction of a window that forces a back-off.
        smoothing: EWMA weight of the newest latency sample.
        min_step_ms: Smallest non-zero delay used when growing from zero.
    """

    min_delay_ms: float = 0.0
    max_delay_ms: float = 5_000.0
    fast_latency_ms: float = 500.0
    slow_latency_ms: float = 2_000.0
    shrink_factor: float = 0.8
    grow_factor: float = 1.5
    error_rate_threshold: float = 0.2
    smoothing: float = 0.3
    min_step_ms: float = 100.0


class AdaptiveDelay:
    """Per-job delay controller.  Not shared between jobs."""

    def __init__(self, base_delay_ms: float, config: AdaptiveDelayConfig | None = None) -> None:
        self.config = config or AdaptiveDelayConfig()
        self.base_delay_ms = float(base_delay_ms)
        self.current_ms = self._clamp(self.base_delay_ms)
        self.ewma_latency_ms: float | None = None
        self.state = DelayState.STEADY
        self.window_samples = 0
        self.window_errors = 0
        self.total_errors = 0

    def _clamp(self, value: float) -> float:
        return max(self.config.min_delay_ms, min(self.config.max_delay_ms, value))

    @property
    def current_seconds(self) -> float:
        return self.current_ms / 1000.0

    def record(self, latency_seconds: float, *, ok: bool) -> None:
        """Record one request outcome in the current window."""
        latency_ms = max(0.0, latency_seconds * 1000.0)
        if self.ewma_latency_ms is None:
            self.ewma_latency_ms = latency_ms
        else:
            alpha = self.config.smoothing
            self.ewma_latency_ms = alpha * latency_ms + (1 - alpha) * self.ewma_latency_ms
        self.window_samples += 1
        if not ok:
            self.window_errors += 1
            self.total_errors += 1

    def adjust(self) -> float:
        """Close the current window and return the new delay in milliseconds."""
        if self.window_samples == 0:
            return self.current_ms

        error_rate = self.window_errors / self.window_samples
        latency = self.ewma_latency_ms or 0.0
        previous = self.current_ms

        if error_rate > self.config.error_rate_threshold or latency > self.config.slow_latency_ms:
            self.state = DelayState.BACKING_OFF
            grown = max(self.current_ms * self.config.grow_factor, self.config.min_step_ms)
            self.current_ms = self._clamp(grown)
        elif self.window_errors == 0 and latency < self.config.fast_latency_ms:
            self.state = DelayState.SPEEDING_UP
            self.current_ms = self._clamp(self.current_ms * self.config.shrink_factor)
        else:
            self.state = DelayState.STEADY

        if self.current_ms != previous:
            logger.debug(
                "rate_control: %s delay %.0fms -> %.0fms (latency=%.0fms errors=%d/%d)",
                self.state.value,
                previous,
                self.current_ms,
                latency,
                self.window_errors,
                self.window_samples,
            )
        self.window_samples = 0
        self.window_errors = 0
        return self.current_ms
