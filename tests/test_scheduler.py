"""Tests for the background loops."""

import threading
from datetime import datetime, timezone

import pytest
from unittest.mock import Mock

from iam_role_manager.controller.declaration import FINALIZER
from iam_role_manager.controller.scheduler import PeriodicTask, RetrySweeper
from iam_role_manager.controller.state_machine import Trigger
from iam_role_manager.controller.store import StoreError

from conftest import make_body


NOW = datetime(2024, 1, 1, 0, 1, 0, tzinfo=timezone.utc)


@pytest.fixture
def callback():
    return Mock()


@pytest.fixture
def sweeper(fake_store, callback):
    """Sweeper whose clock reads 2024-01-01T00:01:00Z."""
    return RetrySweeper(fake_store, callback, interval=0, clock=lambda: NOW)


def add(store, name, state, next_retry="", deleting=False):
    store.add(make_body(
        name=name,
        finalizers=[FINALIZER],
        status={"state": state, "retryCount": 1, "observedGeneration": 1, "nextRetryTimestamp": next_retry},
        deletion_timestamp="2024-01-01T00:00:00Z" if deleting else None,
    ))


class TestRetrySweeper:
    """Test RetrySweeper class."""

    def test_due_records_are_retried(self, sweeper, fake_store, callback):
        """Test only records whose retry time has passed are re-attempted."""
        add(fake_store, "due", "CreateError", next_retry="2024-01-01T00:00:30Z")
        add(fake_store, "later", "UpdateError", next_retry="2024-01-01T00:05:00Z")
        add(fake_store, "terminal", "CreateError")
        add(fake_store, "ready", "Ready")

        assert sweeper.run_once() == 1
        callback.assert_called_once_with("team-a", "due", Trigger.RETRY)

    def test_failed_delete_is_retried(self, sweeper, fake_store, callback):
        """Test a delete waiting on its backoff is picked up once due."""
        add(fake_store, "leaving", "DeleteInProgress", next_retry="2024-01-01T00:01:00Z", deleting=True)

        assert sweeper.run_once() == 1
        callback.assert_called_once_with("team-a", "leaving", Trigger.RETRY)

    def test_callback_errors_are_logged(self, sweeper, fake_store, callback, caplog):
        """Test one failing retry does not skip the rest."""
        add(fake_store, "a", "CreateError", next_retry="2024-01-01T00:00:30Z")
        add(fake_store, "b", "CreateError", next_retry="2024-01-01T00:00:30Z")
        callback.side_effect = [RuntimeError("boom"), None]

        assert sweeper.run_once() == 2
        assert "Retry of Iamrole team-a/a failed" in caplog.text

    def test_list_failure(self, sweeper, fake_store, callback):
        """Test a failing list skips the sweep."""
        fake_store.list = Mock(side_effect=StoreError("list all namespaces failed"))

        assert sweeper.run_once() == 0
        callback.assert_not_called()

    def test_malformed_record_is_skipped(self, sweeper, fake_store, callback):
        """Test an unparseable record does not block the other retries."""
        add(fake_store, "due", "CreateError", next_retry="2024-01-01T00:00:30Z")
        fake_store.add(make_body(
            name="broken",
            statements=[{"Effect": "Maybe", "Action": ["s3:GetObject"], "Resource": ["*"]}],
            status={"state": "CreateError", "nextRetryTimestamp": "2024-01-01T00:00:30Z"},
        ))

        assert sweeper.run_once() == 1
        callback.assert_called_once_with("team-a", "due", Trigger.RETRY)

    def test_start_and_stop(self, fake_store, callback):
        """Test the sweep thread exits on stop."""
        sweeper = RetrySweeper(fake_store, callback, interval=3600)
        sweeper.start()
        sweeper.stop()

        assert sweeper._thread is None
        callback.assert_not_called()


class TestPeriodicTask:
    """Test PeriodicTask class."""

    def test_failing_tick_is_logged(self, caplog):
        """Test the loop keeps ticking after an exception."""
        stop = Mock(spec=threading.Event)
        stop.wait.side_effect = [False, False, False, True]

        class Ticking(PeriodicTask):
            name = "ticking"
            interval = 1
            calls = 0

            def run_once(self):
                Ticking.calls += 1
                if Ticking.calls == 1:
                    raise RuntimeError("boom")
                return 0

        Ticking(stop_event=stop).run()

        assert Ticking.calls == 3
        assert "ticking tick failed" in caplog.text
