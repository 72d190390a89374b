"""Value types shared by the tally, commit and run layers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

KIND_PROPOSAL = "proposal"
KIND_DISPUTE = "dispute"
SUBJECT_KINDS = (KIND_PROPOSAL, KIND_DISPUTE)
KIND_MARKET = "market"

ACTION_APPROVE = "approve"
ACTION_REVERSE = "reverse"
ACTION_FINALIZE = "finalize"
ACTION_NONE = "no_action"


def subject_key(kind: str, subject_id: str) -> str:
    return f"{kind}:{subject_id}"


@dataclass
class VoteRecord:
    kind: str
    subject_id: str
    voter: str
    choice: str
    cast_at: int


@dataclass
class Tally:
    """Counts for one subject. Derived from its vote records, never stored."""

    kind: str
    subject_id: str
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def percentage_for(self, choice: str) -> float:
        total = self.total
        if total <= 0:
            return 0.0
        return self.counts.get(choice, 0) * 100.0 / total

    def bps_for(self, choice: str) -> int:
        """Share of ``choice`` in basis points, floored."""
        total = self.total
        if total <= 0:
            return 0
        return (self.counts.get(choice, 0) * 10_000) // total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "subject_id": self.subject_id,
            "counts": dict(self.counts),
            "total": self.total,
            "percentages": {choice: round(self.percentage_for(choice), 2) for choice in self.counts},
        }


@dataclass
class PendingSubject:
    """A subject waiting for its off-chain period to elapse.

    ``ready_at`` is the unix time the waiting period started.
    """

    subject_id: str
    ready_at: int
    default_decision: str
    state: str = "pending"


@dataclass
class Decision:
    kind: str
    subject_id: str
    action: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return subject_key(self.kind, self.subject_id)


@dataclass
class CommitResult:
    subject: str
    success: bool
    started_at: float
    duration_ms: int
    tx_ref: Optional[str] = None
    error: Optional[str] = None
    message: str = ""
    attempts: int = 0
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RunSummary:
    run_id: str
    kind: str
    started_at: float
    ended_at: float
    candidates: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    attempts: List[CommitResult] = field(default_factory=list)

    @property
    def duration_ms(self) -> int:
        return int(round((self.ended_at - self.started_at) * 1000))

    @classmethod
    def skipped_run(cls, kind: str, now: float) -> "RunSummary":
        return cls(
            run_id=f"skipped-{int(now * 1000)}",
            kind=kind,
            started_at=now,
            ended_at=now,
            skipped=1,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["duration_ms"] = self.duration_ms
        return data
