# matrix_system/utils/time_machine.py
"""
Engine clock.
Real UTC time by default; virtual time can be set for tests and admin replays.
All datetimes are naive UTC, matching how they are stored.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)


class TimeMachine:
    """Clock with optional virtual time."""

    def __init__(self):
        self._virtualTime: Optional[datetime] = None
        self._isTestMode = False

    @property
    def now(self) -> datetime:
        """Current engine time (naive UTC)."""
        if self._isTestMode and self._virtualTime is not None:
            return self._virtualTime
        return datetime.now(timezone.utc).replace(tzinfo=None)

    @property
    def isTestMode(self) -> bool:
        return self._isTestMode

    def setTime(self, moment: datetime) -> None:
        """
        Switch to virtual time.

        Args:
            moment: New current time; aware datetimes are converted to naive UTC
        """
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
        self._virtualTime = moment
        self._isTestMode = True
        logger.info(f"Virtual time set: {moment.isoformat()}")

    def advance(self, **kwargs) -> datetime:
        """Move virtual time forward by a timedelta(**kwargs)."""
        self.setTime(self.now + timedelta(**kwargs))
        return self._virtualTime

    def resetToRealTime(self) -> None:
        self._virtualTime = None
        self._isTestMode = False
        logger.info("Switched back to real time")


timeMachine = TimeMachine()
