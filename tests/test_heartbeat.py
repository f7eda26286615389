"""
Scheduler loop tests - task registry, cadence and loop lifecycle.
"""

import logging
import time

import pytest
from unittest.mock import patch, MagicMock

from reviewgate.core import heartbeat
from reviewgate.core.heartbeat import (
    get_status,
    list_tasks,
    register_task,
    reset_task,
    run_task,
    should_run_task,
    start,
    start_background,
    stop,
    unregister_task,
)


class TestHeartbeatRegistration:
    """Test task registration functionality."""

    def test_register_task_valid(self):
        """Test registering a valid task."""
        register_task("test_task", 30, lambda: None)

        tasks = list_tasks()
        assert tasks == ["test_task"]

    def test_register_task_invalid_func(self):
        """Test registering with non-callable function."""
        with pytest.raises(ValueError, match="Task function must be callable"):
            register_task("bad_task", 30, "not_callable")

    def test_register_task_invalid_interval(self):
        """Test registering with invalid interval."""
        with pytest.raises(ValueError, match="Interval must be >= 1 second"):
            register_task("bad_task", 0, lambda: None)

    def test_register_task_invalid_config(self, monkeypatch):
        monkeypatch.setenv("ANALYTICS_SNAPSHOT_INTERVAL_SEC", "soon")
        with pytest.raises(ValueError, match="Scheduler configuration invalid"):
            register_task("test_task", 30, lambda: None)

    def test_register_duplicate_task(self):
        """Test registering task with existing name replaces it."""
        register_task("duplicate", 30, lambda: None)
        register_task("duplicate", 60, lambda: None)

        assert len(list_tasks()) == 1
        assert heartbeat.tasks["duplicate"]["interval"] == 60

    def test_unregister_task(self):
        register_task("test_task", 30, lambda: None)
        unregister_task("test_task")
        assert "test_task" not in list_tasks()

    def test_unregister_nonexistent_task(self):
        """Test unregistering non-existent task is safe."""
        unregister_task("nonexistent")


class TestHeartbeatScheduling:
    """Test task scheduling logic."""

    def test_should_run_first_time(self):
        task_info = {"last_run": None, "interval": 30}
        assert should_run_task("test", task_info) is True

    def test_should_run_when_due(self):
        task_info = {"last_run": time.monotonic() - 35, "interval": 30}
        assert should_run_task("test", task_info) is True

    def test_should_not_run_too_soon(self):
        task_info = {"last_run": time.monotonic() - 10, "interval": 30}
        assert should_run_task("test", task_info) is False

    def test_reset_task(self):
        register_task("test_task", 30, lambda: None)
        heartbeat.tasks["test_task"]["last_run"] = time.monotonic()
        reset_task("test_task")
        assert heartbeat.tasks["test_task"]["last_run"] is None


class TestHeartbeatExecution:
    """Test task execution and the loop."""

    def test_run_task_records_last_run(self):
        func = MagicMock()
        task_info = {"func": func, "interval": 30, "last_run": None}
        run_task("test", task_info)
        func.assert_called_once()
        assert task_info["last_run"] is not None

    def test_failing_task_keeps_its_interval(self):
        task_info = {"func": MagicMock(side_effect=RuntimeError("db locked")), "interval": 30, "last_run": None}
        with pytest.raises(RuntimeError, match="Task 'test' failed"):
            run_task("test", task_info)
        assert task_info["last_run"] is not None

    @patch('reviewgate.core.heartbeat.is_scheduler_enabled', return_value=False)
    def test_start_disabled(self, mock_enabled, caplog):
        """Test that start is skipped when the scheduler is disabled."""
        with caplog.at_level(logging.INFO, logger="reviewgate"):
            start()
        assert "Scheduler disabled" in caplog.text
        assert heartbeat.running is False

    @patch('reviewgate.core.heartbeat.is_scheduler_enabled', return_value=True)
    def test_start_runs_tasks_until_stopped(self, mock_enabled):
        calls = []
        register_task("work", 30, lambda: calls.append("work"))
        register_task("stopper", 30, stop)

        start()

        assert calls == ["work"]
        assert heartbeat.running is False
        assert heartbeat.tasks["stopper"]["last_run"] is not None

    @patch('reviewgate.core.heartbeat.is_scheduler_enabled', return_value=True)
    def test_one_failing_task_does_not_stop_others(self, mock_enabled):
        calls = []
        register_task("broken", 30, MagicMock(side_effect=RuntimeError("boom")))
        register_task("work", 30, lambda: calls.append("work"))
        register_task("stopper", 30, stop)

        start()
        assert calls == ["work"]

    @patch('reviewgate.core.heartbeat.running', True)
    def test_start_already_running(self):
        with patch('reviewgate.core.heartbeat.is_scheduler_enabled', return_value=True), \
             pytest.raises(RuntimeError, match="already running"):
            start()

    @patch('reviewgate.core.heartbeat.is_scheduler_enabled', return_value=True)
    def test_background_loop(self, mock_enabled):
        ran = []
        register_task("work", 30, lambda: ran.append(True))

        thread = start_background()
        deadline = time.monotonic() + 5
        while not ran and time.monotonic() < deadline:
            time.sleep(0.01)
        stop()

        assert ran
        assert not thread.is_alive()

    @patch('reviewgate.core.heartbeat.is_scheduler_enabled', return_value=True)
    def test_background_loop_is_running_on_return(self, mock_enabled):
        thread = start_background()

        assert heartbeat.running is True
        assert get_status()["status"] == "running"
        with pytest.raises(RuntimeError, match="already running"):
            start_background()

        stop()
        assert heartbeat.running is False
        assert not thread.is_alive()

    @patch('reviewgate.core.heartbeat.is_scheduler_enabled', return_value=False)
    def test_background_loop_disabled(self, mock_enabled):
        assert start_background() is None


class TestHeartbeatStatus:

    @patch('reviewgate.core.heartbeat.is_scheduler_enabled', return_value=False)
    def test_status_disabled(self, mock_enabled):
        assert get_status()["status"] == "disabled"

    @patch('reviewgate.core.heartbeat.is_scheduler_enabled', return_value=True)
    def test_status_lists_tasks(self, mock_enabled):
        register_task("work", 45, lambda: None)
        status = get_status()
        assert status["status"] == "stopped"
        assert status["tasks"]["work"]["interval_sec"] == 45
        assert status["tasks"]["work"]["next_run"] is None
