"""Tests for orchestrator (src/autonomous/orchestrator.py).

Covers:
    - Orchestrator.due_actions: daily hour, intervals, skipped first send slot
    - Orchestrator.tick: dispatch, failure isolation, run-lock conflicts
    - Orchestrator.start / stop / run_headless: lifecycle management
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from src.autonomous.orchestrator import Orchestrator
from src.autonomous.runner import RunResult
from src.core.config import Config
from src.core.exceptions import RunLockError

DAY = datetime(2026, 10, 19, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0) -> datetime:
    return DAY + timedelta(hours=hour, minutes=minute)


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        db_path=tmp_path / "test.db",
        log_path=tmp_path / "logs",
        daily_run_hour=6,
        refresh_interval_minutes=60,
        send_interval_minutes=30,
    )


@pytest.fixture
def runner() -> MagicMock:
    mock = MagicMock()
    for action in ("refresh", "verify", "send", "daily"):
        getattr(mock, action).side_effect = lambda now=None, _a=action: RunResult(
            action=_a, started_at=now
        )
    return mock


@pytest.fixture
def orch(runner, config) -> Orchestrator:
    return Orchestrator(runner, config=config, clock=lambda: at(9))


# ===========================================================================
# due_actions
# ===========================================================================


class TestDueActions:
    def test_fresh_start_outside_daily_hour(self, orch):
        assert orch.due_actions(at(9)) == ["refresh", "send"]

    def test_daily_hour_runs_daily_only(self, orch):
        assert orch.due_actions(at(6)) == ["daily"]
        assert orch.due_actions(at(6, 45)) == ["daily"]

    def test_daily_runs_once_per_day(self, orch):
        orch.tick(at(6))
        assert orch.due_actions(at(6, 10)) == []
        assert orch.due_actions(DAY + timedelta(days=1, hours=6)) == ["daily"]

    def test_first_send_slot_of_daily_hour_skipped(self, orch):
        orch.tick(at(6))
        assert orch.due_actions(at(6, 29)) == []
        assert orch.due_actions(at(6, 30)) == ["send"]
        assert orch.due_actions(at(7)) == ["refresh", "send"]

    def test_first_slot_skipped_even_when_send_never_ran(self, orch):
        orch._last_daily = DAY.date()
        assert orch.due_actions(at(6, 5)) == ["refresh"]

    def test_intervals(self, orch):
        orch.tick(at(9))
        assert orch.due_actions(at(9, 29)) == []
        assert orch.due_actions(at(9, 30)) == ["send"]
        assert orch.due_actions(at(10)) == ["refresh", "send"]


# ===========================================================================
# tick
# ===========================================================================


class TestTick:
    def test_send_runs_verify_first(self, orch, runner):
        runner.send.side_effect = lambda now=None: RunResult(
            action="send", started_at=now, emails_sent=2
        )
        results = orch.tick(at(9))

        assert set(results) == {"refresh", "send"}
        assert results["send"].action == "send"
        assert results["send"].emails_sent == 2
        runner.refresh.assert_called_once_with(at(9))
        runner.verify.assert_called_once_with(at(9))
        runner.send.assert_called_once_with(at(9))
        runner.daily.assert_not_called()

    def test_daily_tick(self, orch, runner):
        results = orch.tick(at(6))
        assert list(results) == ["daily"]
        runner.daily.assert_called_once_with(at(6))
        runner.refresh.assert_not_called()

    def test_uses_clock_when_no_time_given(self, orch, runner):
        orch.tick()
        runner.refresh.assert_called_once_with(at(9))

    def test_failed_action_is_marked_run(self, orch, runner):
        runner.refresh.side_effect = RuntimeError("boom")
        results = orch.tick(at(9))

        assert "refresh" not in results
        assert "send" in results
        assert orch.due_actions(at(9, 1)) == []

    def test_locked_action_stays_due(self, orch, runner):
        runner.verify.side_effect = RunLockError("held")
        results = orch.tick(at(9))

        assert "send" not in results
        runner.send.assert_not_called()
        assert orch.due_actions(at(9, 1)) == ["send"]


# ===========================================================================
# Lifecycle
# ===========================================================================


class TestLifecycle:
    def test_default_is_not_running(self, orch):
        assert orch.is_running() is False

    def test_start_ticks_and_stop(self, runner, config):
        ticked = threading.Event()

        def refresh(now=None):
            ticked.set()
            return RunResult(action="refresh", started_at=now)

        runner.refresh.side_effect = refresh
        orch = Orchestrator(runner, config=config, clock=lambda: at(9), check_interval_seconds=60)
        try:
            orch.start()
            assert orch.is_running() is True
            assert ticked.wait(timeout=5)
        finally:
            orch.stop()
        assert orch.is_running() is False

    def test_start_twice_is_harmless(self, orch):
        try:
            orch.start()
            thread = orch._thread
            orch.start()
            assert orch._thread is thread
        finally:
            orch.stop()

    def test_stop_when_not_running(self, orch):
        orch.stop()
        assert orch.is_running() is False

    def test_headless_stops_on_keyboard_interrupt(self, orch, runner):
        runner.refresh.side_effect = KeyboardInterrupt
        orch.run_headless()
        assert orch.is_running() is False
