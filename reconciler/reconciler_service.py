"""Service API used by market-reconciler RPC methods."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from reconciler.committer import OnChainCommitter
from reconciler.config import ReconcilerConfig
from reconciler.errors import AuthorizationError, ReconcilerError
from reconciler.models import SUBJECT_KINDS
from reconciler.runs import DeadlineRun, ReconciliationRun, VoteThresholdRun
from reconciler.scheduler import ReconcilerScheduler
from reconciler.store import ReconcilerStore
from reconciler.tally import CHOICES, ThresholdEvaluator


class ReconcilerService:
    """Owns the vote-threshold and deadline reconcilers and their schedulers."""

    MAX_ID_LEN = 128
    MAX_FAILURES_LIMIT = 500

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
        self.config = config.validate()
        self._logger = logger
        self._time_fn = time_fn
        self.signer_verified = False

        self.evaluator = ThresholdEvaluator(
            min_votes_required=config.min_votes_required,
            approval_threshold_bps=config.approval_threshold_bps,
            reversal_threshold_bps=config.reversal_threshold_bps,
        )
        run_kwargs = {"logger": logger, "time_fn": time_fn}
        self.runs: Dict[str, ReconciliationRun] = {
            VoteThresholdRun.kind: VoteThresholdRun(store, committer, config, evaluator=self.evaluator, **run_kwargs),
            DeadlineRun.kind: DeadlineRun(store, committer, config, **run_kwargs),
        }
        enabled = {
            VoteThresholdRun.kind: config.vote_enabled,
            DeadlineRun.kind: config.deadline_enabled,
        }
        offsets = {VoteThresholdRun.kind: 0.0, DeadlineRun.kind: config.phase_offset_ms / 1000.0}
        self.schedulers: Dict[str, ReconcilerScheduler] = {
            kind: ReconcilerScheduler(
                run,
                interval_seconds=config.interval_ms / 1000.0,
                run_on_start=config.run_on_start,
                initial_delay_seconds=offsets[kind],
                logger=logger,
                time_fn=time_fn,
            )
            for kind, run in self.runs.items()
            if enabled[kind]
        }
        self.store.initialize()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _now(self) -> int:
        return int(self._time_fn())

    def _valid_id(self, value: Any) -> bool:
        return isinstance(value, str) and 0 < len(value.strip()) <= self.MAX_ID_LEN

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def validate_signer(self) -> Dict[str, Any]:
        try:
            result = self.committer.validate()
        except AuthorizationError as exc:
            self._log(f"reconciler: signer validation failed: {exc}", "error")
            return {"error": str(exc), "error_kind": exc.error_kind}
        except ReconcilerError as exc:
            self._log(f"reconciler: could not verify signer, continuing: {exc}", "warn")
            return {"ok": True, "verified": False, "warning": str(exc)}
        self.signer_verified = bool(result.get("verified"))
        return {"ok": True, **result}

    def start(self) -> Dict[str, Any]:
        validation = self.validate_signer()
        if "error" in validation:
            return validation
        for scheduler in self.schedulers.values():
            scheduler.start()
        return {"ok": True, "started": sorted(self.schedulers), "signer": validation}

    def shutdown(self, max_wait_seconds: Optional[float] = None) -> Dict[str, Any]:
        if max_wait_seconds is None:
            max_wait_seconds = self.config.shutdown_wait_ms / 1000.0
        # one budget shared by all schedulers
        deadline = time.monotonic() + max(0.0, max_wait_seconds)
        results = []
        for scheduler in self.schedulers.values():
            results.append(scheduler.shutdown(max(0.0, deadline - time.monotonic())))
        self.store.close()
        return {"ok": True, "reconcilers": results}

    # ------------------------------------------------------------------
    # Status and manual control
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        reconcilers = {}
        for kind, scheduler in self.schedulers.items():
            entry = scheduler.status()
            entry["config"] = self.config.to_dict()
            reconcilers[kind] = entry
        return {
            "ok": True,
            "dry_run": self.config.dry_run,
            "signer_verified": self.signer_verified,
            "reconcilers": reconcilers,
            "pending_votes": self.store.count_pending_votes(),
            "failure_count": self.store.count_failures(),
        }

    def run_now(self, kind: str = "all") -> Dict[str, Any]:
        if kind == "all":
            kinds = list(self.schedulers)
        elif kind in self.schedulers:
            kinds = [kind]
        else:
            return {"error": f"unknown or disabled reconciler: {kind}", "available": sorted(self.schedulers)}

        summaries: List[Dict[str, Any]] = []
        for name in kinds:
            try:
                summary = self.schedulers[name].trigger()
            except ReconcilerError as exc:
                self._log(f"reconciler: manual {name} run failed: {exc}", "error")
                return {"error": str(exc), "error_kind": exc.error_kind, "kind": name}
            summaries.append(summary.to_dict())
        return {"ok": True, "summaries": summaries}

    def tally(self, kind: str, subject_id: str) -> Dict[str, Any]:
        if kind not in SUBJECT_KINDS:
            return {"error": f"kind must be one of {', '.join(SUBJECT_KINDS)}"}
        if not self._valid_id(subject_id):
            return {"error": "invalid subject_id"}
        votes = self.store.list_votes(kind, subject_id)
        evaluation = self.evaluator.evaluate(kind, subject_id, {v.voter: v.choice for v in votes})
        result = {"ok": True}
        result.update(evaluation.to_dict())
        result["votes"] = [
            {"voter": v.voter, "choice": v.choice, "cast_at": v.cast_at} for v in votes
        ]
        return result

    # ------------------------------------------------------------------
    # Upstream write path
    # ------------------------------------------------------------------

    def record_vote(self, kind: str, subject_id: str, voter: str, choice: str) -> Dict[str, Any]:
        if kind not in SUBJECT_KINDS:
            return {"error": f"kind must be one of {', '.join(SUBJECT_KINDS)}"}
        if not self._valid_id(subject_id) or not self._valid_id(voter):
            return {"error": "invalid subject_id or voter"}
        allowed = CHOICES[kind][:2]
        if choice not in allowed:
            return {"error": f"choice must be one of {', '.join(allowed)}"}
        self.store.record_vote(kind, subject_id.strip(), voter.strip(), choice, cast_at=self._now())
        return {"ok": True, "kind": kind, "subject_id": subject_id.strip(), "voter": voter.strip(), "choice": choice}

    def add_pending(self, subject_id: str, ready_at: int, default_decision: str) -> Dict[str, Any]:
        if not self._valid_id(subject_id):
            return {"error": "invalid subject_id"}
        if not isinstance(ready_at, int) or ready_at <= 0:
            return {"error": "ready_at must be a positive unix timestamp"}
        if not self._valid_id(default_decision):
            return {"error": "invalid default_decision"}
        self.store.add_pending_subject(subject_id.strip(), ready_at, default_decision.strip())
        subject = self.store.get_pending_subject(subject_id.strip())
        return {
            "ok": True,
            "subject_id": subject.subject_id,
            "ready_at": subject.ready_at,
            "default_decision": subject.default_decision,
            "state": subject.state,
        }

    def set_subject_state(self, subject_id: str, state: str) -> Dict[str, Any]:
        if not self._valid_id(subject_id) or not self._valid_id(state):
            return {"error": "invalid subject_id or state"}
        if not self.store.set_subject_state(subject_id.strip(), state.strip()):
            return {"error": "subject not found", "subject_id": subject_id}
        return {"ok": True, "subject_id": subject_id.strip(), "state": state.strip()}

    # ------------------------------------------------------------------
    # Error sink and retention
    # ------------------------------------------------------------------

    def failures(self, limit: int = 50) -> Dict[str, Any]:
        if not isinstance(limit, int) or limit <= 0:
            return {"error": "limit must be positive"}
        limit = min(limit, self.MAX_FAILURES_LIMIT)
        rows = self.store.list_failures(limit=limit)
        return {"ok": True, "count": len(rows), "failures": rows}

    def prune(self, retention_days: Optional[int] = None) -> Dict[str, Any]:
        if retention_days is None:
            retention_days = self.config.tally_retention_days
        if not isinstance(retention_days, int) or retention_days < 1:
            return {"error": "retention_days must be a positive integer"}
        votes_removed = self.store.purge_expired_votes()
        cutoff = self._now() - (retention_days * 86400)
        failures_removed = self.store.prune_failures(before_ts=cutoff)
        return {
            "ok": True,
            "votes_removed": votes_removed,
            "failures_removed": failures_removed,
            "retention_days": retention_days,
        }
