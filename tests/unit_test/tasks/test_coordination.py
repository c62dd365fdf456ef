"""
Unit tests for the Redis-backed locks and schedule tokens of the Celery scheduler.
"""

from unittest.mock import patch

import pytest

from confstack.config import settings
from confstack.resource.types import NamespacedName
from confstack.tasks.coordination import LOCK_PREFIX, ReconcileLock, ScheduleTokens
from tests.unit_test.helpers import FakeRedis

KEY = NamespacedName(namespace="default", name="web")


@pytest.fixture(autouse=True)
def redis_client():
    client = FakeRedis()
    with patch("confstack.tasks.coordination.get_redis_client", return_value=client):
        yield client


class TestReconcileLock:
    """Test suite for ReconcileLock"""

    def test_second_holder_is_refused(self):
        first = ReconcileLock(KEY)
        second = ReconcileLock(KEY)

        assert first.acquire()
        assert not second.acquire()

        first.release()
        assert second.acquire()

    def test_expiry_covers_a_full_pass(self, redis_client):
        lock = ReconcileLock(KEY)
        lock.acquire()

        assert lock._lock.timeout == settings.reconcile_timeout + settings.lock_expire_margin

    def test_locks_are_per_key(self):
        assert ReconcileLock(KEY).acquire()
        assert ReconcileLock(NamespacedName(namespace="team", name="web")).acquire()

    def test_release_of_lost_lock_is_logged(self, redis_client, caplog):
        lock = ReconcileLock(KEY)
        lock.acquire()
        # expired and taken over by another pass
        redis_client.held.discard(f"{LOCK_PREFIX}{KEY}")
        lock._lock.owned = False

        lock.release()

        assert "was lost before release" in caplog.text

    def test_release_without_acquire_is_noop(self):
        ReconcileLock(KEY).release()


class TestScheduleTokens:
    """Test suite for ScheduleTokens"""

    def test_latest_token_is_current(self):
        tokens = ScheduleTokens()
        first = tokens.issue(KEY)
        second = tokens.issue(KEY)

        assert first != second
        assert not tokens.is_current(KEY, first)
        assert tokens.is_current(KEY, second)

    def test_cleared_key_has_no_current_token(self):
        tokens = ScheduleTokens()
        token = tokens.issue(KEY)

        tokens.clear(KEY)

        assert not tokens.is_current(KEY, token)

    def test_tokens_are_per_key(self):
        tokens = ScheduleTokens()
        web = tokens.issue(KEY)
        tokens.issue(NamespacedName(namespace="default", name="api"))

        assert tokens.is_current(KEY, web)
