"""Per-position reposition cooldown.

Process-local and lost on restart; a restart only allows an earlier
reposition, never an unsafe one.
"""

import logging
import time
from typing import Callable

from rebalancer.utils.logging import short_id

logger = logging.getLogger(__name__)


class CooldownTracker:
    def __init__(self, window_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._last: dict[str, float] = {}

    def remaining(self, position_id: str) -> float:
        last = self._last.get(position_id)
        if last is None:
            return 0.0
        return max(0.0, self.window_seconds - (self._clock() - last))

    def can_reposition(self, position_id: str) -> bool:
        left = self.remaining(position_id)
        if left > 0:
            logger.info(f"[{short_id(position_id)}] Reposition cooldown: {left:.0f}s remaining")
            return False
        return True

    def record(self, position_id: str):
        self._last[position_id] = self._clock()

    def __len__(self) -> int:
        return len(self._last)
