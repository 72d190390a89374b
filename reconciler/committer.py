"""Builds, signs and submits on-chain commit operations with bounded retry."""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from reconciler.config import RetryPolicy
from reconciler.errors import (
    AuthorizationError,
    CommitCancelledError,
    ReconcilerError,
    TransientError,
    error_kind_of,
)
from reconciler.ledger import LedgerGatewayClient, classify_ledger_error
from reconciler.models import (
    ACTION_APPROVE,
    ACTION_FINALIZE,
    ACTION_REVERSE,
    CommitResult,
    Decision,
)

SleepFn = Callable[[float, Optional[threading.Event]], bool]

INSTRUCTIONS = {
    ACTION_APPROVE: "aggregate_proposal_votes",
    ACTION_REVERSE: "aggregate_dispute_votes",
    ACTION_FINALIZE: "finalize_market",
}


def interruptible_sleep(seconds: float, cancel_event: Optional[threading.Event] = None) -> bool:
    """Sleep for ``seconds``; returns True if woken by ``cancel_event``."""
    if seconds <= 0:
        return bool(cancel_event and cancel_event.is_set())
    if cancel_event is None:
        time.sleep(seconds)
        return False
    return cancel_event.wait(seconds)


class OnChainCommitter:
    """Turns a Decision into a confirmed ledger transaction.

    Each attempt builds the operation, signs it with the node key, submits it
    to the gateway and waits for confirmation. Transient failures are retried
    per the RetryPolicy; authorization and state-conflict failures are not.
    """

    def __init__(
        self,
        gateway: Optional[LedgerGatewayClient],
        rpc: Any = None,
        policy: Optional[RetryPolicy] = None,
        logger: Optional[Callable[[str, str], None]] = None,
        dry_run: bool = False,
        confirm_timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 2.0,
        time_fn: Callable[[], float] = time.time,
        sleep_fn: SleepFn = interruptible_sleep,
    ):
        if gateway is None and not dry_run:
            raise ValueError("a ledger gateway is required unless dry_run is set")
        self.gateway = gateway
        self.rpc = rpc
        self.policy = policy or RetryPolicy()
        self._logger = logger
        self.dry_run = bool(dry_run)
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._time_fn = time_fn
        self._sleep_fn = sleep_fn
        self._signer_id = ""

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _now(self) -> int:
        return int(self._time_fn())

    def signer_id(self) -> str:
        if self._signer_id:
            return self._signer_id
        if not self.rpc:
            raise AuthorizationError("RPC not available for signing")
        try:
            info = self.rpc.getinfo()
        except Exception as exc:
            raise TransientError(f"getinfo failed: {exc}") from exc
        node_id = str(info.get("id", "")) if isinstance(info, dict) else ""
        if not node_id:
            raise AuthorizationError("getinfo returned no node id")
        self._signer_id = node_id
        return node_id

    def _sign_message(self, payload: str) -> str:
        if not self.rpc:
            raise AuthorizationError("RPC not available for signing")
        try:
            result = self.rpc.signmessage(payload)
        except Exception as exc:
            self._log(f"reconciler: signmessage failed: {exc}", "warn")
            raise AuthorizationError(f"signmessage failed: {exc}") from exc
        sig = str(result.get("zbase", "") or "") if isinstance(result, dict) else ""
        if not sig:
            raise AuthorizationError("signmessage returned empty signature")
        return sig

    def build_operation(self, decision: Decision, signer: str) -> Dict[str, Any]:
        return {
            "instruction": INSTRUCTIONS[decision.action],
            "kind": decision.kind,
            "subject_id": decision.subject_id,
            "action": decision.action,
            "payload": decision.payload,
            "signer": signer,
            "timestamp": self._now(),
        }

    @staticmethod
    def canonical(operation: Dict[str, Any]) -> str:
        return json.dumps(operation, sort_keys=True, separators=(",", ":"))

    def validate(self) -> Dict[str, Any]:
        """Check that our signing key is the authority the ledger expects."""
        signer = self.signer_id()
        if self.dry_run or self.gateway is None:
            return {"signer": signer, "authority": "", "verified": False}
        authority = self.gateway.get_authority()
        if authority and authority != signer:
            raise AuthorizationError(
                f"signer {signer} does not match ledger authority {authority}"
            )
        return {"signer": signer, "authority": authority, "verified": bool(authority)}

    # ------------------------------------------------------------------
    # Commit pipeline
    # ------------------------------------------------------------------

    def _submit_once(self, decision: Decision, cancel_event: Optional[threading.Event]) -> str:
        signer = self.signer_id()
        operation = self.build_operation(decision, signer)
        signature = self._sign_message(self.canonical(operation))
        tx_ref = self.gateway.submit_commit(operation, signature=signature, signer=signer)
        self._wait_for_confirmation(tx_ref, cancel_event)
        return tx_ref

    def _wait_for_confirmation(self, tx_ref: str, cancel_event: Optional[threading.Event]) -> None:
        deadline = self._time_fn() + self.confirm_timeout_seconds
        while True:
            status = self.gateway.get_commit_status(tx_ref)
            state = str(status.get("status", "")).lower()
            if state == "confirmed":
                return
            if state == "failed":
                raise classify_ledger_error(None, str(status.get("error") or "transaction failed"))
            if self._time_fn() >= deadline:
                raise TransientError(
                    f"transaction {tx_ref} not confirmed within {self.confirm_timeout_seconds}s"
                )
            if self._sleep_fn(self.poll_interval_seconds, cancel_event):
                raise CommitCancelledError(f"cancelled while confirming {tx_ref}")

    def _commit_with_retry(
        self,
        decision: Decision,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[str, int]:
        if decision.action not in INSTRUCTIONS:
            raise ValueError(f"no ledger instruction for action {decision.action!r}")
        if self.dry_run:
            self._log(f"reconciler: dry run, skipping ledger write for {decision.key}", "info")
            return f"dry-run-{decision.key}", 1

        max_attempts = self.policy.max_attempts
        for attempt in range(1, max_attempts + 1):
            delay = self.policy.delay_before(attempt)
            if delay > 0 and self._sleep_fn(delay, cancel_event):
                raise self._with_attempts(
                    CommitCancelledError(f"commit of {decision.key} cancelled during backoff"),
                    attempt - 1,
                )
            if cancel_event is not None and cancel_event.is_set():
                raise self._with_attempts(
                    CommitCancelledError(f"commit of {decision.key} cancelled"), attempt - 1
                )

            try:
                tx_ref = self._submit_once(decision, cancel_event)
                return tx_ref, attempt
            except ReconcilerError as exc:
                error = exc
            except Exception as exc:
                error = TransientError(f"unexpected ledger error: {exc}")
                error.__cause__ = exc

            if not error.retryable or attempt >= max_attempts:
                raise self._with_attempts(error, attempt)
            self._log(
                f"reconciler: attempt {attempt}/{max_attempts} for {decision.key} failed "
                f"({error.error_kind}): {error}; retrying in {self.policy.delay_before(attempt + 1):g}s",
                "warn",
            )

        # max_attempts >= 1 is enforced by config validation
        raise TransientError(f"no commit attempts made for {decision.key}")

    @staticmethod
    def _with_attempts(error: ReconcilerError, attempts: int) -> ReconcilerError:
        error.attempts = attempts
        return error

    def commit(self, decision: Decision, cancel_event: Optional[threading.Event] = None) -> str:
        tx_ref, _ = self._commit_with_retry(decision, cancel_event)
        return tx_ref

    def execute(
        self,
        decision: Decision,
        cancel_event: Optional[threading.Event] = None,
    ) -> CommitResult:
        """Run ``commit`` and fold its outcome into a CommitResult. Never raises."""
        started = self._time_fn()
        try:
            tx_ref, attempts = self._commit_with_retry(decision, cancel_event)
        except Exception as exc:
            return CommitResult(
                subject=decision.key,
                success=False,
                started_at=started,
                duration_ms=int((self._time_fn() - started) * 1000),
                error=error_kind_of(exc),
                message=str(exc),
                attempts=int(getattr(exc, "attempts", 0) or 0),
                dry_run=self.dry_run,
            )
        return CommitResult(
            subject=decision.key,
            success=True,
            started_at=started,
            duration_ms=int((self._time_fn() - started) * 1000),
            tx_ref=tx_ref,
            attempts=attempts,
            dry_run=self.dry_run,
        )
