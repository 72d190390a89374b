"""Unit tests for vote-threshold and deadline reconciliation runs."""

import os
import sqlite3
import sys
import threading
import time
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from reconciler.committer import OnChainCommitter
from reconciler.config import DAY_MS, ReconcilerConfig
from reconciler.errors import AuthorizationError, StateConflictError, StoreUnavailableError
from reconciler.models import CommitResult
from reconciler.runs import PHASE_IDLE, DeadlineRun, VoteThresholdRun
from reconciler.store import ReconcilerStore

NODE_ID = "02" + "ab" * 32


class _MockRpc:
    def getinfo(self):
        return {"id": NODE_ID}

    def signmessage(self, message: str):
        return {"zbase": "mock_sig_" + message[:16]}


class _FakeGateway:
    def __init__(self, errors=None):
        self.errors = list(errors or [])
        self.submitted = []

    def submit_commit(self, operation, signature, signer):
        self.submitted.append(operation["subject_id"])
        if self.errors:
            raise self.errors.pop(0)
        return f"tx-{operation['subject_id']}"

    def get_commit_status(self, tx_ref):
        return {"status": "confirmed"}

    def get_authority(self):
        return NODE_ID


class _BlockingCommitter:
    """Commits instantly except for ``hang_on``, which waits until cancelled."""

    dry_run = False

    def __init__(self, hang_on):
        self.hang_on = hang_on
        self.cancelled = threading.Event()

    def execute(self, decision, cancel_event=None):
        if decision.subject_id == self.hang_on:
            cancel_event.wait(5)
            self.cancelled.set()
        return CommitResult(
            subject=decision.key,
            success=True,
            started_at=time.time(),
            duration_ms=0,
            tx_ref=f"tx-{decision.subject_id}",
            attempts=1,
        )


def _config(**overrides):
    overrides.setdefault("min_votes_required", 4)
    return ReconcilerConfig(**overrides).validate()


def _make_store(tmp_path, **kwargs):
    store = ReconcilerStore(db_path=str(tmp_path / "reconciler.db"), **kwargs)
    store.initialize()
    return store


def _make_committer(gateway=None, dry_run=False):
    return OnChainCommitter(
        gateway=gateway if gateway is not None else _FakeGateway(),
        rpc=_MockRpc(),
        dry_run=dry_run,
        sleep_fn=lambda seconds, cancel_event=None: False,
    )


def _cast(store, kind, subject_id, **choices):
    for choice, count in choices.items():
        for i in range(count):
            store.record_vote(kind, subject_id, f"{subject_id}-{choice}-{i}", choice)


# ---------------------------------------------------------------------------
# Vote-threshold run
# ---------------------------------------------------------------------------


def test_vote_run_commits_and_clears_decided_subjects(tmp_path):
    store = _make_store(tmp_path)
    _cast(store, "proposal", "p1", like=3, dislike=1)
    _cast(store, "proposal", "p2", like=2, dislike=2)
    _cast(store, "dispute", "d1", agree=3, disagree=1)
    gateway = _FakeGateway()
    run = VoteThresholdRun(store, _make_committer(gateway), _config())

    summary = run.run()
    assert summary.kind == "vote"
    assert summary.candidates == 2
    assert summary.succeeded == 2
    assert summary.failed == 0
    assert sorted(gateway.submitted) == ["d1", "p1"]

    assert store.get_tally("proposal", "p1") == {}
    assert store.get_tally("dispute", "d1") == {}
    # below threshold: left for a later run
    assert len(store.get_tally("proposal", "p2")) == 4
    assert run.phase == PHASE_IDLE


def test_failed_commit_keeps_tally_and_records_failure(tmp_path):
    store = _make_store(tmp_path)
    _cast(store, "proposal", "p1", like=4)
    gateway = _FakeGateway(errors=[AuthorizationError("Unauthorized")])
    run = VoteThresholdRun(store, _make_committer(gateway), _config())

    summary = run.run(run_id="run-7-1000")
    assert summary.failed == 1
    assert summary.attempts[0].error == "authorization"
    assert len(store.get_tally("proposal", "p1")) == 4

    failures = store.list_failures()
    assert len(failures) == 1
    assert failures[0]["run_id"] == "run-7-1000"
    assert failures[0]["kind"] == "vote"
    assert failures[0]["subject"] == "proposal:p1"

    # next run succeeds and only then clears
    summary = run.run()
    assert summary.succeeded == 1
    assert store.get_tally("proposal", "p1") == {}


def test_state_conflict_counts_as_success(tmp_path):
    store = _make_store(tmp_path)
    _cast(store, "proposal", "p1", like=4)
    gateway = _FakeGateway(errors=[StateConflictError("already finalized")])
    run = VoteThresholdRun(store, _make_committer(gateway), _config())

    summary = run.run()
    assert summary.succeeded == 1
    assert summary.failed == 0
    result = summary.attempts[0]
    assert result.success is True
    assert result.error == "state_conflict"
    assert store.get_tally("proposal", "p1") == {}
    assert store.list_failures() == []


def test_dry_run_leaves_tally(tmp_path):
    store = _make_store(tmp_path)
    _cast(store, "proposal", "p1", like=4)
    run = VoteThresholdRun(store, _make_committer(dry_run=True), _config(dry_run=True))

    summary = run.run()
    assert summary.succeeded == 1
    assert summary.attempts[0].tx_ref == "dry-run-proposal:p1"
    assert len(store.get_tally("proposal", "p1")) == 4


def test_store_unavailable_aborts_run(tmp_path):
    store = _make_store(tmp_path)
    run = VoteThresholdRun(store, _make_committer(), _config())

    with patch.object(store, "get_all_subjects", side_effect=StoreUnavailableError("redis down")):
        with pytest.raises(StoreUnavailableError):
            run.run()
    assert run.phase == PHASE_IDLE


def test_error_sink_failure_does_not_mask_result(tmp_path):
    store = _make_store(tmp_path)
    _cast(store, "proposal", "p1", like=4)
    logs = []
    gateway = _FakeGateway(errors=[AuthorizationError("Unauthorized")])
    run = VoteThresholdRun(
        store,
        _make_committer(gateway),
        _config(),
        logger=lambda msg, level: logs.append((level, msg)),
    )

    with patch.object(store, "append_failure", side_effect=sqlite3.OperationalError("database is locked")):
        summary = run.run()
    assert summary.failed == 1
    assert summary.attempts[0].error == "authorization"
    assert any("failed to record commit failure" in msg for _, msg in logs)


def test_run_id_generated_when_missing(tmp_path):
    store = _make_store(tmp_path)
    run = VoteThresholdRun(store, _make_committer(), _config(), time_fn=lambda: 1234.5)

    summary = run.run()
    assert summary.run_id == "run-1-1234500"
    assert summary.candidates == 0


# ---------------------------------------------------------------------------
# Deadline run
# ---------------------------------------------------------------------------


def test_deadline_safety_buffer(tmp_path):
    now = 2_000_000_000
    wait_s = 2 * DAY_MS // 1000
    store = _make_store(tmp_path)
    store.add_pending_subject("early", now - wait_s - 61, "yes")
    store.add_pending_subject("late", now - wait_s - 30, "no")
    gateway = _FakeGateway()
    run = DeadlineRun(
        store,
        _make_committer(gateway),
        _config(wait_period_ms=2 * DAY_MS, safety_buffer_ms=60_000),
        time_fn=lambda: now,
    )

    summary = run.run()
    assert summary.candidates == 1
    assert gateway.submitted == ["early"]
    assert summary.attempts[0].subject == "market:early"


def test_deadline_run_oldest_first_and_batched(tmp_path):
    now = 2_000_000_000
    store = _make_store(tmp_path)
    store.add_pending_subject("c", 1_003, "yes")
    store.add_pending_subject("a", 1_001, "yes")
    store.add_pending_subject("d", 1_004, "yes")
    store.add_pending_subject("b", 1_002, "yes")
    gateway = _FakeGateway()
    run = DeadlineRun(store, _make_committer(gateway), _config(batch_size=3), time_fn=lambda: now)

    run.run()
    assert gateway.submitted == ["a", "b", "c"]


def test_timeout_isolates_hung_item(tmp_path):
    store = _make_store(tmp_path)
    for i, subject_id in enumerate(["m1", "m2", "m3"]):
        store.add_pending_subject(subject_id, 100 + i, "yes")
    committer = _BlockingCommitter(hang_on="m2")
    run = DeadlineRun(store, committer, _config(per_item_timeout_ms=200))

    summary = run.run()
    assert [r.subject for r in summary.attempts] == ["market:m1", "market:m2", "market:m3"]
    assert [r.success for r in summary.attempts] == [True, False, True]
    assert summary.attempts[1].error == "timeout"
    assert summary.succeeded == 2
    assert summary.failed == 1
    # the hung item saw its cancellation
    assert committer.cancelled.wait(2)
    assert [f["error_kind"] for f in store.list_failures()] == ["timeout"]


class _SlowCommitter:
    """Ignores cancellation, like a blocked HTTP round-trip, and tracks overlap."""

    dry_run = False

    def __init__(self, delays):
        self.delays = delays
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def execute(self, decision, cancel_event=None):
        with self.lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(self.delays.get(decision.subject_id, 0))
        with self.lock:
            self.active -= 1
        return CommitResult(
            subject=decision.key,
            success=True,
            started_at=time.time(),
            duration_ms=0,
            tx_ref=f"tx-{decision.subject_id}",
            attempts=1,
        )


def test_timed_out_commit_not_overlapped_by_next(tmp_path):
    store = _make_store(tmp_path)
    for i, subject_id in enumerate(["m1", "m2", "m3"]):
        store.add_pending_subject(subject_id, 100 + i, "yes")
    committer = _SlowCommitter({"m1": 0.3})
    run = DeadlineRun(store, committer, _config(per_item_timeout_ms=200))

    summary = run.run()
    assert committer.max_active == 1
    assert [r.error for r in summary.attempts] == ["timeout", None, None]
    assert "may still land" in summary.attempts[0].message


def test_next_item_gives_up_while_previous_still_in_flight(tmp_path):
    store = _make_store(tmp_path)
    store.add_pending_subject("m1", 100, "yes")
    store.add_pending_subject("m2", 101, "yes")
    committer = _SlowCommitter({"m1": 0.6})
    run = DeadlineRun(store, committer, _config(per_item_timeout_ms=200))

    summary = run.run()
    assert committer.max_active == 1
    assert [r.error for r in summary.attempts] == ["timeout", "timeout"]
    assert "previous commit still in flight" in summary.attempts[1].message


def test_worker_pool_preserves_submission_order(tmp_path):
    store = _make_store(tmp_path)
    for i, subject_id in enumerate(["m1", "m2", "m3", "m4"]):
        store.add_pending_subject(subject_id, 100 + i, "yes")
    run = DeadlineRun(store, _make_committer(), _config(max_workers=3))

    summary = run.run()
    assert [r.subject for r in summary.attempts] == ["market:m1", "market:m2", "market:m3", "market:m4"]
    assert summary.succeeded == 4


def test_cancelled_run_skips_remaining_candidates(tmp_path):
    store = _make_store(tmp_path)
    store.add_pending_subject("m1", 100, "yes")
    store.add_pending_subject("m2", 101, "yes")
    gateway = _FakeGateway()
    run = DeadlineRun(store, _make_committer(gateway), _config())
    cancel = threading.Event()
    cancel.set()

    summary = run.run(cancel_event=cancel)
    assert summary.candidates == 2
    assert summary.skipped == 2
    assert summary.succeeded == 0
    assert gateway.submitted == []
