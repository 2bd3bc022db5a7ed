"""
Grace period policy: how long a soft-deleted resource is left to its owning
controller before the uninstaller clears its finalizer itself.
"""
import logging
import threading
from datetime import datetime, timedelta

logger = logging.getLogger("uninstall-operator")


class GracePeriodPolicy:
    """
    One mutable duration shared by a whole pass.

    The value can only shrink. Callers must read it at the moment of each
    comparison, never cache it across a pass.
    """

    def __init__(self, seconds: float = 90.0):
        if seconds < 0:
            raise ValueError(f"grace period must not be negative: {seconds}")
        self._lock = threading.Lock()
        self._period = timedelta(seconds=seconds)

    @property
    def period(self) -> timedelta:
        with self._lock:
            return self._period

    @property
    def seconds(self) -> float:
        return self.period.total_seconds()

    def shorten(self, seconds: float):
        """Lower the grace period. Raising it is refused."""
        new_period = timedelta(seconds=seconds)
        with self._lock:
            if new_period > self._period:
                raise ValueError(
                    f"grace period can only be shortened "
                    f"({self._period.total_seconds()}s -> {seconds}s)"
                )
            if new_period != self._period:
                logger.info(f"Grace period set to {seconds}s (was {self._period.total_seconds()}s)")
            self._period = new_period

    def expire(self):
        """No cooperating controller remains: stop waiting altogether."""
        self.shorten(0)

    def elapsed(self, deletion_timestamp: datetime, now: datetime) -> bool:
        return now - deletion_timestamp > self.period
