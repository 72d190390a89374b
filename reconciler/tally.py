"""Threshold evaluation of off-chain vote tallies. No I/O."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from reconciler.models import (
    ACTION_APPROVE,
    ACTION_NONE,
    ACTION_REVERSE,
    KIND_DISPUTE,
    KIND_PROPOSAL,
    Decision,
    Tally,
)

# kind -> (primary choice, secondary choice, action when the primary share wins)
CHOICES: Dict[str, Tuple[str, str, str]] = {
    KIND_PROPOSAL: ("like", "dislike", ACTION_APPROVE),
    KIND_DISPUTE: ("agree", "disagree", ACTION_REVERSE),
}


@dataclass
class Evaluation:
    tally: Tally
    threshold_bps: int
    min_votes_required: int
    quorum_met: bool
    threshold_met: bool
    action: str

    @property
    def decision_reached(self) -> bool:
        return self.action != ACTION_NONE

    def to_decision(self) -> Optional[Decision]:
        if not self.decision_reached:
            return None
        primary, secondary, _ = CHOICES[self.tally.kind]
        return Decision(
            kind=self.tally.kind,
            subject_id=self.tally.subject_id,
            action=self.action,
            payload={
                primary: self.tally.counts.get(primary, 0),
                secondary: self.tally.counts.get(secondary, 0),
                "total": self.tally.total,
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.tally.to_dict()
        data.update(
            {
                "threshold_pct": self.threshold_bps / 100.0,
                "min_votes_required": self.min_votes_required,
                "quorum_met": self.quorum_met,
                "threshold_met": self.threshold_met,
                "decision": self.action,
            }
        )
        return data


class ThresholdEvaluator:
    """Turns a raw ``{voter: choice}`` map into counts and a decision.

    Proposals use the approval threshold, disputes the reversal threshold.
    A tally below quorum or below threshold yields ``no_action`` and is left
    in place for the next run; nothing here ever rejects a subject.
    """

    def __init__(
        self,
        min_votes_required: int = 10,
        approval_threshold_bps: int = 7_000,
        reversal_threshold_bps: int = 6_000,
    ):
        self.min_votes_required = int(min_votes_required)
        self._thresholds = {
            KIND_PROPOSAL: int(approval_threshold_bps),
            KIND_DISPUTE: int(reversal_threshold_bps),
        }

    def threshold_for(self, kind: str) -> int:
        if kind not in self._thresholds:
            raise ValueError(f"unknown subject kind: {kind}")
        return self._thresholds[kind]

    def count(self, kind: str, subject_id: str, votes: Mapping[str, str]) -> Tally:
        primary, secondary, _ = self._choices(kind)
        counts = {primary: 0, secondary: 0}
        for choice in votes.values():
            if choice in counts:
                counts[choice] += 1
        return Tally(kind=kind, subject_id=subject_id, counts=counts)

    def evaluate(self, kind: str, subject_id: str, votes: Mapping[str, str]) -> Evaluation:
        tally = self.count(kind, subject_id, votes)
        threshold_bps = self.threshold_for(kind)
        primary, _, action = self._choices(kind)

        quorum_met = tally.total >= self.min_votes_required
        threshold_met = quorum_met and tally.bps_for(primary) >= threshold_bps

        return Evaluation(
            tally=tally,
            threshold_bps=threshold_bps,
            min_votes_required=self.min_votes_required,
            quorum_met=quorum_met,
            threshold_met=threshold_met,
            action=action if threshold_met else ACTION_NONE,
        )

    @staticmethod
    def _choices(kind: str) -> Tuple[str, str, str]:
        try:
            return CHOICES[kind]
        except KeyError:
            raise ValueError(f"unknown subject kind: {kind}") from None
