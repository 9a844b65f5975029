from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class BackoffController:
    """Consecutive-failure streak and the inter-request delay derived from it.

    ``delay`` is ``base`` while the streak is zero and
    ``min(base * 2 ** streak, cap)`` afterwards. Once the streak reaches
    ``threshold`` the caller must stop issuing requests.
    """

    def __init__(self, base: float, cap: float, threshold: int = 5) -> None:
        if base <= 0 or cap < base:
            raise ValueError("Backoff requires 0 < base <= cap")
        self.base = base
        self.cap = cap
        self.threshold = threshold
        self._streak = 0

    @property
    def streak(self) -> int:
        return self._streak

    @property
    def exhausted(self) -> bool:
        return self._streak >= self.threshold

    def delay_for(self, streak: int) -> float:
        if streak <= 0:
            return self.base
        return min(self.base * (2 ** streak), self.cap)

    @property
    def delay(self) -> float:
        return self.delay_for(self._streak)

    def record_success(self) -> None:
        self._streak = 0

    def record_failure(self) -> int:
        self._streak += 1
        return self._streak

    def reset(self) -> None:
        if self._streak:
            logger.info("Failure streak of %d cleared", self._streak)
        self._streak = 0
