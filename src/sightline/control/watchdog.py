"""
Watchdog
========

Last line of defense against a hung inference call.

Observed on the same tick as admission: once the session has been
continuously BUSY for longer than stuck_timeout, the controller forces a full
session reset (ignoring the reset cooldown) and flushes all queued work.
"""

import logging
from typing import Optional

from sightline.models.state import SessionState


logger = logging.getLogger(__name__)


class Watchdog:
    """
    Stuck-busy detector.

    Attributes:
        stuck_timeout: Seconds of continuous BUSY before declaring stuck
        trips: Number of times the watchdog has fired
    """

    def __init__(self, stuck_timeout: float = 30.0) -> None:
        if stuck_timeout <= 0:
            raise ValueError("stuck_timeout must be positive")
        self.stuck_timeout = stuck_timeout
        self.trips: int = 0
        self._busy_started: Optional[float] = None

    @property
    def busy_started(self) -> Optional[float]:
        return self._busy_started

    def busy_for(self, now: float) -> float:
        if self._busy_started is None:
            return 0.0
        return now - self._busy_started

    def observe(self, state: SessionState, now: float) -> bool:
        """
        Record the session state.

        Returns:
            True when BUSY has lasted longer than stuck_timeout.
        """
        if state is not SessionState.BUSY:
            self._busy_started = None
            return False

        if self._busy_started is None:
            self._busy_started = now
            return False

        if now - self._busy_started > self.stuck_timeout:
            self.trips += 1
            logger.error(
                f"Session stuck busy for {now - self._busy_started:.1f}s "
                f"(timeout {self.stuck_timeout}s)"
            )
            return True
        return False

    def clear(self) -> None:
        """Reset the stuck-state counter."""
        self._busy_started = None
