"""
Heartbeat: cooperative periodic task runner for the background jobs
(activity ingestion, relevance refresh, fairness audit).
"""

import threading
import time
from typing import Callable, Dict

from .config import is_heartbeat_enabled, validate_heartbeat_config
from ..util.logging import logger


tasks: Dict[str, Dict] = {}  # task_name -> {func, interval, last_run, failures}
running = False
shutdown_event = None

# Longest single pass tolerated before the loop stops itself
MAX_CYCLE_SEC = 600.0


def register_task(name: str, interval_sec: int, func: Callable):
    """
    Register a task to be executed periodically.

    Args:
        name: Unique task identifier
        interval_sec: How often to run this task in seconds
        func: Zero-argument callable
    """
    if not callable(func):
        raise ValueError(f"Task function must be callable: {func}")

    if interval_sec < 1:
        raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

    issues = validate_heartbeat_config()
    if issues:
        raise ValueError(f"Heartbeat configuration invalid: {issues}")

    tasks[name] = {
        "func": func,
        "interval": interval_sec,
        "last_run": None,
        "failures": 0
    }

    logger.log_operation("heartbeat.register", "success", {"task": name, "interval_sec": interval_sec})


def unregister_task(name: str):
    """Remove a task from the registry."""
    if name in tasks:
        del tasks[name]
        logger.log_operation("heartbeat.unregister", "success", {"task": name})


def list_tasks():
    """Return list of registered task names."""
    return list(tasks.keys())


def run_pending() -> int:
    """Run every due task once. A failing task never stops the others. Returns tasks run."""
    ran = 0
    for name, task_info in list(tasks.items()):
        if should_run_task(name, task_info):
            try:
                run_task(name, task_info)
            except RuntimeError as e:
                logger.error(str(e))
            ran += 1
    return ran


def start(force: bool = False):
    """
    Start the heartbeat loop (blocking).

    Checks task intervals with time.monotonic() and executes tasks when due.
    """
    global running, shutdown_event

    if not force and not is_heartbeat_enabled():
        logger.info("Heartbeat disabled (HEARTBEAT_ENABLED=false). Skipping start.")
        return

    if running:
        raise RuntimeError("Heartbeat already running")

    issues = validate_heartbeat_config()
    if issues:
        raise ValueError(f"Heartbeat configuration invalid: {issues}")

    running = True
    shutdown_event = threading.Event()
    logger.log_operation("heartbeat.start", "success", {"tasks": list_tasks()})

    try:
        while running and not shutdown_event.is_set():
            start_time = time.monotonic()
            run_pending()

            elapsed = time.monotonic() - start_time
            if elapsed > MAX_CYCLE_SEC:
                logger.warning(f"Heartbeat cycle too slow ({elapsed:.1f}s). Exiting.")
                break

            shutdown_event.wait(0.1)

    except KeyboardInterrupt:
        logger.info("Heartbeat interrupted by user")
    finally:
        running = False
        logger.log_operation("heartbeat.stop", "success", {})


def stop():
    """Stop the heartbeat loop gracefully."""
    global running

    if not running:
        return

    running = False
    if shutdown_event:
        shutdown_event.set()


def should_run_task(name: str, task_info: Dict) -> bool:
    """Check if a task should run this cycle."""
    if task_info["last_run"] is None:
        return True

    elapsed = time.monotonic() - task_info["last_run"]
    return elapsed >= task_info["interval"]


def run_task(name: str, task_info: Dict):
    """Execute a task and record timing. Raises RuntimeError if the task fails."""
    start_time = time.monotonic()

    try:
        task_info["func"]()
    except Exception as e:
        end_time = time.monotonic()
        # A failed task still waits a full interval before retrying
        task_info["last_run"] = end_time
        task_info["failures"] += 1
        logger.log_heartbeat_task(name, start_time, end_time, "failed", {"error": str(e)[:200]})
        raise RuntimeError(f"Task '{name}' failed after {end_time - start_time:.2f}s: {e}") from e

    end_time = time.monotonic()
    task_info["last_run"] = end_time
    logger.log_heartbeat_task(name, start_time, end_time, "success")


def reset_task(name: str):
    """Reset a task's last_run time to force immediate execution."""
    if name in tasks:
        tasks[name]["last_run"] = None


def get_status():
    """Return current heartbeat status for monitoring."""
    if not is_heartbeat_enabled() and not running:
        return {"status": "disabled", "reason": "HEARTBEAT_ENABLED=false", "tasks": list_tasks()}

    return {
        "status": "running" if running else "stopped",
        "tasks": {
            name: {
                "interval_sec": info["interval"],
                "last_run": info["last_run"],
                "next_run": info["last_run"] + info["interval"] if info["last_run"] else None,
                "failures": info["failures"]
            }
            for name, info in tasks.items()
        }
    }
