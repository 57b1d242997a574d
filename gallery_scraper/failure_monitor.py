from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class FailureRateMonitor:
    """
    Sliding window over the last ``window`` unit outcomes.

    should_auto_pause() is true when ``consecutive_threshold`` failures arrive
    back to back, or when the window is full and the failure ratio reaches
    ``ratio_threshold``.
    """

    def __init__(self, window: int = 10, consecutive_threshold: int = 5, ratio_threshold: float = 0.8) -> None:
        self.window = max(1, int(window))
        self.consecutive_threshold = max(1, int(consecutive_threshold))
        self.ratio_threshold = float(ratio_threshold)
        self._outcomes: Deque[bool] = deque(maxlen=self.window)
        self.consecutive_failures = 0
        self.total_failures = 0
        self.timeout_count = 0
        self.last_reason: Optional[str] = None

    def record(self, success: bool, *, is_timeout: bool = False) -> None:
        self._outcomes.append(bool(success))
        if success:
            self.consecutive_failures = 0
            return
        self.consecutive_failures += 1
        self.total_failures += 1
        if is_timeout:
            self.timeout_count += 1

    @property
    def failure_ratio(self) -> float:
        if not self._outcomes:
            return 0.0
        return sum(1 for ok in self._outcomes if not ok) / len(self._outcomes)

    @property
    def window_full(self) -> bool:
        return len(self._outcomes) >= self.window

    def should_auto_pause(self) -> bool:
        if self.consecutive_failures >= self.consecutive_threshold:
            self.last_reason = f"{self.consecutive_failures} consecutive failures"
            return True
        if self.window_full and self.failure_ratio >= self.ratio_threshold:
            self.last_reason = f"{round(self.failure_ratio * 100)}% failures over last {self.window}"
            return True
        return False

    def reset_consecutive(self) -> None:
        self.consecutive_failures = 0

    def reset(self) -> None:
        self._outcomes.clear()
        self.consecutive_failures = 0
        self.total_failures = 0
        self.timeout_count = 0
        self.last_reason = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "window": list(self._outcomes),
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "timeout_count": self.timeout_count,
            "failure_ratio": round(self.failure_ratio, 3),
        }
