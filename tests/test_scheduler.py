"""Unit tests for the single-flight scheduler."""

import os
import sys
import threading

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from reconciler.errors import StoreUnavailableError
from reconciler.models import RunSummary
from reconciler.scheduler import ReconcilerScheduler


class _FakeRun:
    """Stands in for a ReconciliationRun; optionally blocks until released."""

    kind = "vote"
    phase = "idle"

    def __init__(self, block=False, fail=False):
        self.block = block
        self.fail = fail
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = []

    def run(self, run_id=None, cancel_event=None):
        self.calls.append(run_id)
        self.entered.set()
        if self.fail:
            raise StoreUnavailableError("store offline")
        if self.block:
            while not self.release.is_set():
                if cancel_event is not None and cancel_event.wait(0.01):
                    break
        return RunSummary(run_id=run_id, kind=self.kind, started_at=1.0, ended_at=2.0, candidates=1, succeeded=1)


def test_trigger_runs_in_caller_thread():
    run = _FakeRun()
    scheduler = ReconcilerScheduler(run, interval_seconds=300, time_fn=lambda: 1000.0)

    summary = scheduler.trigger()
    assert summary.succeeded == 1
    assert run.calls == ["run-1-1000000"]

    status = scheduler.status()
    assert status["is_running"] is False
    assert status["run_count"] == 1
    assert status["last_run_time"] == 1000.0
    assert status["interval_ms"] == 300_000
    assert status["last_summary"]["succeeded"] == 1
    assert status["last_summary"]["duration_ms"] == 1000


def test_concurrent_firing_is_skipped():
    run = _FakeRun(block=True)
    scheduler = ReconcilerScheduler(run, interval_seconds=300, time_fn=lambda: 5.0)

    worker = threading.Thread(target=scheduler.trigger)
    worker.start()
    assert run.entered.wait(2)
    assert scheduler.is_running is True

    skipped = scheduler.trigger()
    assert skipped.skipped == 1
    assert skipped.succeeded == 0
    assert skipped.failed == 0
    assert skipped.run_id == "skipped-5000"

    run.release.set()
    worker.join(2)
    assert scheduler.is_running is False
    assert scheduler.run_count == 1
    assert len(run.calls) == 1


def test_background_loop_runs_on_start_and_survives_errors():
    run = _FakeRun(fail=True)
    logs = []
    scheduler = ReconcilerScheduler(
        run,
        interval_seconds=0.05,
        run_on_start=True,
        logger=lambda msg, level: logs.append((level, msg)),
    )

    scheduler.start()
    assert run.entered.wait(2)
    # keeps firing after the first failure
    for _ in range(100):
        if len(run.calls) >= 2:
            break
        threading.Event().wait(0.02)
    result = scheduler.shutdown(max_wait_seconds=1)

    assert len(run.calls) >= 2
    assert result["clean"] is True
    assert scheduler.status()["last_error"] == "store offline"
    assert any(level == "error" for level, _ in logs)


def test_phase_offset_delays_first_run():
    run = _FakeRun()
    scheduler = ReconcilerScheduler(run, interval_seconds=300, run_on_start=True, initial_delay_seconds=30)

    scheduler.start()
    assert run.entered.wait(0.2) is False
    scheduler.shutdown(max_wait_seconds=1)
    assert run.calls == []


def test_shutdown_cancels_run_after_budget():
    run = _FakeRun(block=True)
    logs = []
    scheduler = ReconcilerScheduler(run, interval_seconds=300, logger=lambda msg, level: logs.append((level, msg)))

    worker = threading.Thread(target=scheduler.trigger)
    worker.start()
    assert run.entered.wait(2)

    result = scheduler.shutdown(max_wait_seconds=0.1)
    assert result["clean"] is False
    worker.join(2)
    assert not worker.is_alive()
    assert any(level == "warn" and "cancelling" in msg for level, msg in logs)

    # no new firings after shutdown
    assert scheduler.trigger().skipped == 1


def test_shutdown_waits_for_clean_finish():
    run = _FakeRun(block=True)
    scheduler = ReconcilerScheduler(run, interval_seconds=300)

    worker = threading.Thread(target=scheduler.trigger)
    worker.start()
    assert run.entered.wait(2)
    threading.Timer(0.1, run.release.set).start()

    result = scheduler.shutdown(max_wait_seconds=5)
    assert result["clean"] is True
    worker.join(2)
