"""
Periodic task loop that drives the timeout scheduler, notification redelivery and
analytics snapshots. Ticks are independent of request volume.
"""

import time
import threading
from typing import Callable, Dict, Optional

from .config import is_scheduler_enabled, validate_scheduler_config
from ..util.logging import logger


tasks: Dict[str, Dict] = {}  # task_name -> {func, interval, last_run}
running = False
shutdown_event = None
_thread: Optional[threading.Thread] = None


def register_task(name: str, interval_sec: int, func: Callable):
    """
    Register a task to be executed periodically.

    Args:
        name: Unique task identifier
        interval_sec: How often to run this task in seconds
        func: Function to call (should be fast and not block)
    """
    if not callable(func):
        raise ValueError(f"Task function must be callable: {func}")

    if interval_sec < 1:
        raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

    issues = validate_scheduler_config()
    if issues:
        raise ValueError(f"Scheduler configuration invalid: {issues}")

    tasks[name] = {
        "func": func,
        "interval": interval_sec,
        "last_run": None
    }

    logger.info(f"Registered scheduler task '{name}' (every {interval_sec}s)")


def unregister_task(name: str):
    """Remove a task from the registry."""
    if name in tasks:
        del tasks[name]
        logger.info(f"Unregistered scheduler task '{name}'")


def list_tasks():
    """Return list of registered task names."""
    return list(tasks.keys())


def _prepare():
    """Validate and mark the loop running. Done before any thread starts so callers see it at once."""
    global running, shutdown_event

    if running:
        raise RuntimeError("Scheduler already running")

    issues = validate_scheduler_config()
    if issues:
        raise ValueError(f"Scheduler configuration invalid: {issues}")

    running = True
    shutdown_event = threading.Event()


def _loop():
    global running

    logger.info(f"Starting scheduler loop with tasks: {list(tasks.keys())}")

    try:
        while running and not shutdown_event.is_set():
            for name, task_info in list(tasks.items()):
                if should_run_task(name, task_info):
                    try:
                        run_task(name, task_info)
                    except Exception as e:
                        # One failing task must not stop the others
                        logger.error(f"Scheduler task '{name}' failed: {e}")

            shutdown_event.wait(0.1)

    except KeyboardInterrupt:
        logger.info("Scheduler interrupted by user")
    finally:
        running = False
        logger.info("Scheduler loop stopped")


def start():
    """
    Run the loop in the calling thread until stop() is called.

    Cooperative scheduling: each pass runs every task whose interval has
    elapsed, measured with time.monotonic().
    """
    if not is_scheduler_enabled():
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false). Skipping start.")
        return

    _prepare()
    _loop()


def start_background() -> Optional[threading.Thread]:
    """Run the loop in a daemon thread (used by the API process). `running` is already set on return."""
    global _thread

    if not is_scheduler_enabled():
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false). Not starting background loop.")
        return None

    _prepare()
    _thread = threading.Thread(target=_loop, name="reviewgate-scheduler", daemon=True)
    _thread.start()
    return _thread


def stop():
    """Stop the loop gracefully."""
    global running, _thread

    if not running:
        logger.info("Scheduler not running")
        return

    logger.info("Stopping scheduler loop...")
    running = False

    if shutdown_event:
        shutdown_event.set()

    if _thread is not None and _thread is not threading.current_thread():
        _thread.join(timeout=5)
        _thread = None


def should_run_task(name: str, task_info: Dict) -> bool:
    """Check if a task should run this cycle."""
    if task_info["last_run"] is None:
        return True  # Run immediately if never run

    elapsed = time.monotonic() - task_info["last_run"]
    return elapsed >= task_info["interval"]


def run_task(name: str, task_info: Dict):
    """Execute a task and record timing."""
    start_time = time.monotonic()

    try:
        task_info["func"]()
    except Exception as e:
        duration = time.monotonic() - start_time
        # Record the attempt so a failing task keeps its interval instead of spinning
        task_info["last_run"] = time.monotonic()
        raise RuntimeError(f"Task '{name}' failed after {duration:.2f}s: {e}") from e

    end_time = time.monotonic()
    task_info["last_run"] = end_time
    logger.debug(f"Scheduler task '{name}' completed in {end_time - start_time:.2f}s")


def reset_task(name: str):
    """Reset a task's last_run time to force immediate execution."""
    if name in tasks:
        tasks[name]["last_run"] = None
        logger.info(f"Reset scheduler task '{name}' (will run immediately)")


def get_status():
    """Return current scheduler status for monitoring."""
    if not is_scheduler_enabled():
        return {"status": "disabled", "reason": "SCHEDULER_ENABLED=false"}

    return {
        "status": "running" if running else "stopped",
        "tasks": {
            name: {
                "interval_sec": info["interval"],
                "last_run": info["last_run"],
                "next_run": info["last_run"] + info["interval"] if info["last_run"] else None
            }
            for name, info in tasks.items()
        }
    }
