"""One reconciliation pass: collect candidates, commit each, summarise."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

from reconciler.committer import OnChainCommitter
from reconciler.config import ReconcilerConfig
from reconciler.errors import CommitTimeoutError
from reconciler.models import (
    ACTION_FINALIZE,
    KIND_MARKET,
    SUBJECT_KINDS,
    CommitResult,
    Decision,
    RunSummary,
)
from reconciler.store import ReconcilerStore
from reconciler.tally import ThresholdEvaluator

PHASE_IDLE = "idle"
PHASE_COLLECTING = "collecting"
PHASE_PROCESSING = "processing"
PHASE_COMPLETING = "completing"

# how often a waiting item checks for run-level cancellation
_JOIN_SLICE_SECONDS = 0.25


class ReconciliationRun:
    """Shared run pipeline. Subclasses supply ``collect`` and ``on_success``.

    Item failures end up in ``CommitResult.error`` and the error sink; only a
    failure to collect candidates escapes ``run()``.
    """

    kind = "reconcile"

    def __init__(
        self,
        store: ReconcilerStore,
        committer: OnChainCommitter,
        config: ReconcilerConfig,
        logger: Optional[Callable[[str, str], None]] = None,
        time_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self.committer = committer
        self.config = config
        self._logger = logger
        self._time_fn = time_fn
        self.phase = PHASE_IDLE
        self._run_count = 0
        # held by the worker of a sequential run while it commits
        self._submit_slot = threading.Lock()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def collect(self) -> List[Decision]:
        raise NotImplementedError

    def on_success(self, decision: Decision, result: CommitResult) -> None:
        """Hook for clearing resolved off-chain state."""

    def run(
        self,
        run_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunSummary:
        started = self._time_fn()
        self._run_count += 1
        if not run_id:
            run_id = f"run-{self._run_count}-{int(started * 1000)}"
        summary = RunSummary(run_id=run_id, kind=self.kind, started_at=started, ended_at=started)

        try:
            self.phase = PHASE_COLLECTING
            decisions = self.collect()
            summary.candidates = len(decisions)
            if decisions:
                self._log(f"reconciler: {self.kind} run {run_id} found {len(decisions)} candidate(s)", "info")

            self.phase = PHASE_PROCESSING
            results = self._process_all(decisions, cancel_event)

            self.phase = PHASE_COMPLETING
            for decision, result in zip(decisions, results):
                if result is None:
                    summary.skipped += 1
                    continue
                self._complete(run_id, decision, result)
                summary.attempts.append(result)
                if result.success:
                    summary.succeeded += 1
                else:
                    summary.failed += 1
        finally:
            self.phase = PHASE_IDLE
            summary.ended_at = self._time_fn()

        level = "warn" if summary.failed else "info"
        if summary.candidates or summary.failed:
            self._log(
                f"reconciler: {self.kind} run {run_id} finished: candidates={summary.candidates} "
                f"succeeded={summary.succeeded} failed={summary.failed} skipped={summary.skipped} "
                f"in {summary.duration_ms}ms",
                level,
            )
        return summary

    def _process_all(
        self,
        decisions: List[Decision],
        cancel_event: Optional[threading.Event],
    ) -> List[Optional[CommitResult]]:
        if self.config.max_workers > 1 and len(decisions) > 1:
            with ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix=f"reconciler-{self.kind}",
            ) as pool:
                return list(pool.map(lambda d: self._process_one(d, cancel_event), decisions))
        return [self._process_one(decision, cancel_event) for decision in decisions]

    def _process_one(
        self,
        decision: Decision,
        cancel_event: Optional[threading.Event],
    ) -> Optional[CommitResult]:
        if cancel_event is not None and cancel_event.is_set():
            return None

        started = self._time_fn()
        budget = self.config.per_item_timeout_ms / 1000.0
        serialised = self.config.max_workers <= 1

        # a timed-out commit may still be talking to the ledger; wait for it
        # before signing anything else
        if serialised:
            if not self._submit_slot.acquire(timeout=budget):
                return self._timeout_result(
                    decision,
                    started,
                    f"{decision.key} not started: previous commit still in flight "
                    f"after {self.config.per_item_timeout_ms}ms",
                )
            self._submit_slot.release()

        item_cancel = threading.Event()
        outcome: List[CommitResult] = []

        def _target() -> None:
            if not serialised:
                outcome.append(self.committer.execute(decision, item_cancel))
                return
            with self._submit_slot:
                outcome.append(self.committer.execute(decision, item_cancel))

        deadline = time.monotonic() + budget
        worker = threading.Thread(target=_target, name=f"reconciler-commit-{decision.key}", daemon=True)
        worker.start()

        while worker.is_alive():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            worker.join(min(remaining, _JOIN_SLICE_SECONDS))
            if cancel_event is not None and cancel_event.is_set():
                item_cancel.set()

        if outcome:
            return outcome[0]

        item_cancel.set()
        return self._timeout_result(
            decision,
            started,
            f"{decision.key} did not complete within {self.config.per_item_timeout_ms}ms; "
            "the commit may still land on the ledger",
        )

    def _timeout_result(self, decision: Decision, started: float, message: str) -> CommitResult:
        error = CommitTimeoutError(message)
        self._log(f"reconciler: {error}", "warn")
        return CommitResult(
            subject=decision.key,
            success=False,
            started_at=started,
            duration_ms=int((self._time_fn() - started) * 1000),
            error=error.error_kind,
            message=str(error),
            dry_run=self.committer.dry_run,
        )

    def _complete(self, run_id: str, decision: Decision, result: CommitResult) -> None:
        if result.error == "state_conflict":
            # goal state already reached on the ledger
            result.success = True
            self._log(f"reconciler: {decision.key} already settled on the ledger: {result.message}", "info")

        if result.success:
            try:
                self.on_success(decision, result)
            except Exception as exc:
                self._log(f"reconciler: cleanup after commit of {decision.key} failed: {exc}", "error")
            return

        self._log(
            f"reconciler: commit of {decision.key} failed ({result.error}) "
            f"after {result.attempts} attempt(s): {result.message}",
            "error",
        )
        try:
            self.store.append_failure(run_id, self.kind, result)
        except Exception as exc:
            self._log(f"reconciler: failed to record commit failure for {decision.key}: {exc}", "error")


class VoteThresholdRun(ReconciliationRun):
    """Commits proposal approvals and dispute reversals once a tally passes."""

    kind = "vote"

    def __init__(self, *args, evaluator: Optional[ThresholdEvaluator] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.evaluator = evaluator or ThresholdEvaluator(
            min_votes_required=self.config.min_votes_required,
            approval_threshold_bps=self.config.approval_threshold_bps,
            reversal_threshold_bps=self.config.reversal_threshold_bps,
        )

    def collect(self) -> List[Decision]:
        decisions: List[Decision] = []
        for kind in SUBJECT_KINDS:
            for subject_id in self.store.get_all_subjects(kind):
                votes = self.store.get_tally(kind, subject_id)
                evaluation = self.evaluator.evaluate(kind, subject_id, votes)
                decision = evaluation.to_decision()
                if decision is not None:
                    decisions.append(decision)
                else:
                    self._log(
                        f"reconciler: {kind}:{subject_id} not ready "
                        f"(total={evaluation.tally.total}, quorum_met={evaluation.quorum_met})",
                        "debug",
                    )
        return decisions

    def on_success(self, decision: Decision, result: CommitResult) -> None:
        if result.dry_run:
            return
        self.store.clear_tally(decision.kind, decision.subject_id)


class DeadlineRun(ReconciliationRun):
    """Finalizes markets whose dispute window has elapsed without a dispute."""

    kind = "deadline"

    def cutoff(self) -> int:
        window_ms = self.config.wait_period_ms + self.config.safety_buffer_ms
        return int(self._time_fn() - window_ms / 1000.0)

    def collect(self) -> List[Decision]:
        ready = self.store.find_ready(self.cutoff(), limit=self.config.batch_size)
        return [
            Decision(
                kind=KIND_MARKET,
                subject_id=subject.subject_id,
                action=ACTION_FINALIZE,
                payload={"outcome": subject.default_decision, "ready_at": subject.ready_at},
            )
            for subject in ready
        ]
