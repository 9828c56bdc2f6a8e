"""
Feed health state machine.

A feed accumulates consecutive failures. With a few failures it is still fetched every cycle, after that it backs
off for hours at a time, and eventually it is disabled until somebody re-enables it by hand.

Transitions are pure: they return a new :class:`FeedHealth`, and the caller decides when to persist it.
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

HEALTHY_MAX_FAILURES = 3
SHORT_BACKOFF_MAX_FAILURES = 7
LONG_BACKOFF_MAX_FAILURES = 10
DISABLE_AFTER_FAILURES = LONG_BACKOFF_MAX_FAILURES + 1

SHORT_BACKOFF = timedelta(hours=6)
LONG_BACKOFF = timedelta(hours=24)


class HealthState(str, Enum):
    HEALTHY = "healthy"
    BACKOFF = "backoff"
    DISABLED = "disabled"


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo, stored values are UTC
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class FeedHealth(BaseModel):
    model_config = ConfigDict(frozen=True)

    consecutive_failures: int = Field(0, ge=0)
    last_error: Optional[str] = None
    last_failed_at: Optional[datetime] = None
    disabled_at: Optional[datetime] = None

    @classmethod
    def from_feed(cls, feed) -> "FeedHealth":
        """
        Health of a stored :class:`~rreader.models.Feed`.
        """
        return cls(
            consecutive_failures=feed.consecutive_failures or 0,
            last_error=feed.last_error,
            last_failed_at=_aware(feed.last_failed_at),
            disabled_at=_aware(feed.disabled_at),
        )

    def record_failure(self, error: str, now: datetime) -> "FeedHealth":
        failures = self.consecutive_failures + 1
        return FeedHealth(
            consecutive_failures=failures,
            last_error=error,
            last_failed_at=now,
            disabled_at=now if failures >= DISABLE_AFTER_FAILURES else None,
        )

    def record_success(self) -> "FeedHealth":
        return FeedHealth()

    def should_skip(self, now: datetime) -> bool:
        """
        Whether a scheduled (not forced) fetch should be skipped at `now`.
        """
        failures = self.consecutive_failures
        if failures <= HEALTHY_MAX_FAILURES:
            return False
        if failures > LONG_BACKOFF_MAX_FAILURES:
            return True

        if self.last_failed_at is None:
            return False

        window = SHORT_BACKOFF if failures <= SHORT_BACKOFF_MAX_FAILURES else LONG_BACKOFF
        return now - _aware(self.last_failed_at) < window

    @property
    def disabled(self) -> bool:
        return self.disabled_at is not None

    @property
    def state(self) -> HealthState:
        if self.disabled:
            return HealthState.DISABLED
        if self.consecutive_failures > HEALTHY_MAX_FAILURES:
            return HealthState.BACKOFF
        return HealthState.HEALTHY
