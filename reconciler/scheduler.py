"""Fixed-period, single-flight scheduling of reconciliation runs."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional

from reconciler.models import RunSummary
from reconciler.runs import ReconciliationRun


class ReconcilerScheduler:
    """Fires ``run.run()`` every ``interval_seconds`` on a background thread.

    At most one run is in flight at a time: a firing that finds the run lock
    held returns a skipped summary instead of waiting.
    """

    def __init__(
        self,
        run: ReconciliationRun,
        interval_seconds: float,
        run_on_start: bool = True,
        initial_delay_seconds: float = 0.0,
        logger: Optional[Callable[[str, str], None]] = None,
        time_fn: Callable[[], float] = time.time,
    ):
        self.run = run
        self.interval_seconds = float(interval_seconds)
        self.run_on_start = bool(run_on_start)
        self.initial_delay_seconds = max(0.0, float(initial_delay_seconds))
        self._logger = logger
        self._time_fn = time_fn

        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._cancel_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._closed = False

        self.run_count = 0
        self.last_run_time: Optional[float] = None
        self.last_summary: Optional[RunSummary] = None
        self.last_error = ""

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    @property
    def kind(self) -> str:
        return self.run.kind

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def started(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.started:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"reconciler-{self.kind}-scheduler",
            daemon=True,
        )
        self._thread.start()
        self._log(
            f"reconciler: {self.kind} scheduler started "
            f"(interval={self.interval_seconds:g}s, offset={self.initial_delay_seconds:g}s, "
            f"run_on_start={self.run_on_start})",
            "info",
        )

    def _loop(self) -> None:
        if self.initial_delay_seconds and self._stop_event.wait(self.initial_delay_seconds):
            return
        if self.run_on_start:
            self._fire_safely()
        while not self._stop_event.wait(self.interval_seconds):
            self._fire_safely()

    def _fire_safely(self) -> None:
        try:
            self.fire()
        except Exception as exc:
            self.last_error = str(exc)
            self._log(f"reconciler: {self.kind} run failed, retrying next tick: {exc}", "error")

    def fire(self) -> RunSummary:
        """Run once in the calling thread unless a run is already in flight."""
        now = self._time_fn()
        if self._closed:
            self._log(f"reconciler: {self.kind} scheduler is shut down; not running", "warn")
            return RunSummary.skipped_run(self.kind, now)
        if not self._run_lock.acquire(blocking=False):
            self._log(f"reconciler: {self.kind} run already in progress; skipping", "warn")
            return RunSummary.skipped_run(self.kind, now)

        try:
            self._cancel_event.clear()
            self.run_count += 1
            self.last_run_time = now
            run_id = f"run-{self.run_count}-{int(now * 1000)}"
            summary = self.run.run(run_id=run_id, cancel_event=self._cancel_event)
            self.last_summary = summary
            self.last_error = ""
            return summary
        finally:
            self._run_lock.release()

    trigger = fire

    def status(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "is_running": self.is_running,
            "phase": self.run.phase,
            "scheduled": self.started,
            "last_run_time": self.last_run_time,
            "run_count": self.run_count,
            "interval_ms": int(self.interval_seconds * 1000),
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
            "last_error": self.last_error,
        }

    def shutdown(self, max_wait_seconds: float = 60.0) -> Dict[str, Any]:
        """Stop firing, wait up to ``max_wait_seconds`` for the current run, then cancel it."""
        self._closed = True
        self._stop_event.set()
        started = time.monotonic()

        drained = self._run_lock.acquire(timeout=max(0.0, max_wait_seconds))
        if drained:
            self._run_lock.release()
        else:
            self._cancel_event.set()
            self._log(
                f"reconciler: {self.kind} run still active after {max_wait_seconds:g}s; "
                "cancelling in-flight run",
                "warn",
            )

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)

        return {
            "kind": self.kind,
            "clean": drained,
            "waited_ms": int((time.monotonic() - started) * 1000),
        }
