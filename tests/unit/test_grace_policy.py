"""
Unit tests for the grace period / dunning policy.
"""

from datetime import datetime, timedelta, timezone

from billing_engine.config.settings import Settings
from billing_engine.domain.grace import GracePolicy


NOW = datetime(2026, 4, 1, tzinfo=timezone.utc)


class TestGracePolicy:

    def test_defaults(self):
        policy = GracePolicy()
        assert policy.grace_period == timedelta(days=3)
        assert policy.max_failed_attempts is None

    def test_deadline(self):
        assert GracePolicy().grace_deadline(NOW) == NOW + timedelta(days=3)

    def test_expiry_is_inclusive(self):
        policy = GracePolicy()
        deadline = policy.grace_deadline(NOW)
        assert not policy.is_expired(deadline, deadline - timedelta(microseconds=1))
        assert policy.is_expired(deadline, deadline)

    def test_no_deadline_never_expires(self):
        assert not GracePolicy().is_expired(None, NOW)

    def test_attempts_unbounded_by_default(self):
        assert not GracePolicy().attempts_exhausted(100)

    def test_attempt_limit(self):
        policy = GracePolicy(max_failed_attempts=3)
        assert not policy.attempts_exhausted(2)
        assert policy.attempts_exhausted(3)

    def test_from_settings(self):
        settings = Settings(_env_file=None, grace_period_days=7, max_failed_payment_attempts=4)
        policy = GracePolicy.from_settings(settings)
        assert policy.grace_period == timedelta(days=7)
        assert policy.max_failed_attempts == 4
