"""
Grace Period / Dunning Policy

How long a subscription with a failed renewal keeps access, and
optionally how many failed attempts end the grace window early.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from billing_engine.config.settings import Settings


@dataclass(frozen=True)
class GracePolicy:
    grace_period: timedelta = timedelta(days=3)
    max_failed_attempts: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "GracePolicy":
        return cls(
            grace_period=timedelta(days=settings.grace_period_days),
            max_failed_attempts=settings.max_failed_payment_attempts,
        )

    def grace_deadline(self, failed_at: datetime) -> datetime:
        """End of the grace window opened by a failure at ``failed_at``."""
        return failed_at + self.grace_period

    def attempts_exhausted(self, failed_attempts: int) -> bool:
        if self.max_failed_attempts is None:
            return False
        return failed_attempts >= self.max_failed_attempts

    def is_expired(self, grace_period_end: Optional[datetime], now: datetime) -> bool:
        return grace_period_end is not None and now >= grace_period_end
