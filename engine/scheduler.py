"""
Adaptive Control Plane — Periodic Background Tasks

Each PeriodicTask owns one daemon thread that calls a function every
``interval`` seconds. Stopping is cooperative: stop() prevents new
ticks and waits for the tick in flight to finish, so a training cycle
or rebalance is never interrupted half-way through an update.

A tick that raises is logged and counted; the thread keeps running.

Usage:
    task = PeriodicTask("lifecycle", interval=1.0, fn=manager.run_due_cycles)
    task.start()
    task.trigger()   # run the next tick now instead of waiting
    task.stop()
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

logger = logging.getLogger("control_plane.scheduler")


class PeriodicTask:
    """Runs ``fn`` on a fixed interval in a background thread."""

    def __init__(self, name: str, interval: float, fn: Callable[[], Any]):
        if interval <= 0:
            raise ValueError(f"{name}: interval must be > 0, got {interval}")
        self.name = name
        self.interval = interval
        self._fn = fn
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._runs = 0
        self._failures = 0
        self._last_error: str | None = None
        self._last_run_at: float | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._wake.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"cp-{self.name}", daemon=True,
        )
        self._thread.start()
        logger.info("Periodic task started: %s (every %.3fs)", self.name, self.interval)

    def trigger(self) -> None:
        """Wake the task so the next tick runs immediately."""
        self._wake.set()

    def stop(self, timeout: float | None = None) -> bool:
        """
        Stop scheduling new ticks and wait for the current one.

        Returns True if the thread exited within ``timeout``.
        """
        self._stop.set()
        self._wake.set()
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        stopped = not thread.is_alive()
        if stopped:
            self._thread = None
            logger.info("Periodic task stopped: %s", self.name)
        else:
            logger.warning("Periodic task %s still running after %ss", self.name, timeout)
        return stopped

    def run_once(self) -> bool:
        """Run one tick on the calling thread. Returns False if it raised."""
        return self._tick()

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(self.interval)
            self._wake.clear()
            if self._stop.is_set():
                break
            self._tick()

    def _tick(self) -> bool:
        try:
            self._fn()
            ok = True
        except Exception as e:
            logger.exception("Periodic task %s failed", self.name)
            with self._lock:
                self._failures += 1
                self._last_error = f"{type(e).__name__}: {e}"
            ok = False
        with self._lock:
            self._runs += 1
            self._last_run_at = time.time()
        return ok

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "interval_s": self.interval,
                "running": self.running,
                "runs": self._runs,
                "failures": self._failures,
                "last_error": self._last_error,
                "last_run_at": self._last_run_at,
            }
