"""
AlertEvaluator: threshold alerting with a cooldown.

States: QUIET -> COOLING -> QUIET

- QUIET: a count >= threshold fires an alert and enters COOLING
- COOLING: nothing fires until `cooldown` seconds have passed since the
  last alert, then the evaluator is QUIET again
- Threshold updates apply from the next evaluation on
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class AlertState(Enum):
    QUIET = "QUIET"
    COOLING = "COOLING"


@dataclass(frozen=True)
class AlertDecision:
    fire: bool
    count: int
    threshold: int


class AlertEvaluator:

    def __init__(self, threshold: int = 15, cooldown: float = 300.0,
                 clock: Callable[[], float] = time.monotonic):
        self._threshold = self._validate_threshold(threshold)
        self.cooldown = cooldown
        self._clock = clock
        self._last_alert_at: Optional[float] = None
        self.alerts_fired = 0

    @staticmethod
    def _validate_threshold(value) -> int:
        if isinstance(value, bool):
            raise ValueError(f"invalid threshold: {value!r}")
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, str):
            value = int(value.strip())
        if not isinstance(value, int) or value < 1:
            raise ValueError(f"threshold must be a positive integer, got {value!r}")
        return value

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def last_alert_at(self) -> Optional[float]:
        return self._last_alert_at

    def state(self, now: Optional[float] = None) -> AlertState:
        if self._last_alert_at is None:
            return AlertState.QUIET
        now = self._clock() if now is None else now
        if now - self._last_alert_at >= self.cooldown:
            return AlertState.QUIET
        return AlertState.COOLING

    def evaluate(self, count: int, now: Optional[float] = None) -> AlertDecision:
        """Decide whether `count` fires an alert at time `now`."""
        now = self._clock() if now is None else now
        threshold = self._threshold

        if self.state(now) is AlertState.QUIET and count >= threshold:
            self._last_alert_at = now
            self.alerts_fired += 1
            logger.warning(f"[Alert] Threshold exceeded ({count} people, threshold {threshold})")
            return AlertDecision(fire=True, count=count, threshold=threshold)

        return AlertDecision(fire=False, count=count, threshold=threshold)

    def update_threshold(self, value) -> int:
        """Set a new threshold. Raises ValueError for non-positive or non-integer values."""
        self._threshold = self._validate_threshold(value)
        logger.info(f"[Alert] Threshold updated to {self._threshold}")
        return self._threshold

    def snapshot(self) -> dict:
        return {
            "threshold": self._threshold,
            "cooldown": self.cooldown,
            "state": self.state().value,
            "alerts_fired": self.alerts_fired,
        }
