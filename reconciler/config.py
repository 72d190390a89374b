"""Configuration surface for the vote-threshold and deadline reconcilers."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List

from reconciler.errors import ValidationError

DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_ms: int = 5_000
    max_delay_ms: int = 20_000
    backoff_factor: float = 2.0

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (1-based). Zero for the first."""
        if attempt <= 1:
            return 0.0
        delay_ms = self.initial_delay_ms * (self.backoff_factor ** (attempt - 2))
        return min(delay_ms, self.max_delay_ms) / 1000.0


@dataclass
class ReconcilerConfig:
    interval_ms: int = 5 * 60 * 1000
    min_votes_required: int = 10
    approval_threshold_pct: float = 70.0
    reversal_threshold_pct: float = 60.0
    max_attempts: int = 3
    initial_delay_ms: int = 5_000
    max_delay_ms: int = 20_000
    backoff_factor: float = 2.0
    batch_size: int = 10
    per_item_timeout_ms: int = 30_000
    safety_buffer_ms: int = 60_000
    wait_period_ms: int = 2 * DAY_MS
    dry_run: bool = False
    run_on_start: bool = True
    phase_offset_ms: int = 150_000
    shutdown_wait_ms: int = 60_000
    tally_retention_days: int = 7
    max_workers: int = 1
    confirm_timeout_ms: int = 60_000
    vote_enabled: bool = True
    deadline_enabled: bool = True

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            backoff_factor=self.backoff_factor,
        )

    @property
    def approval_threshold_bps(self) -> int:
        return int(round(self.approval_threshold_pct * 100))

    @property
    def reversal_threshold_bps(self) -> int:
        return int(round(self.reversal_threshold_pct * 100))

    def validate(self) -> "ReconcilerConfig":
        problems: List[str] = []

        if self.interval_ms < 1_000:
            problems.append(f"interval_ms must be >= 1000, got {self.interval_ms}")
        if self.min_votes_required < 1:
            problems.append(f"min_votes_required must be >= 1, got {self.min_votes_required}")
        for name in ("approval_threshold_pct", "reversal_threshold_pct"):
            value = getattr(self, name)
            if not 0 < value <= 100:
                problems.append(f"{name} must be in (0, 100], got {value}")
        if not 1 <= self.max_attempts <= 10:
            problems.append(f"max_attempts must be between 1 and 10, got {self.max_attempts}")
        if self.initial_delay_ms < 0:
            problems.append(f"initial_delay_ms must be >= 0, got {self.initial_delay_ms}")
        if self.max_delay_ms < self.initial_delay_ms:
            problems.append(
                f"max_delay_ms ({self.max_delay_ms}) must be >= initial_delay_ms ({self.initial_delay_ms})"
            )
        if self.backoff_factor < 1:
            problems.append(f"backoff_factor must be >= 1, got {self.backoff_factor}")
        if not 1 <= self.batch_size <= 100:
            problems.append(f"batch_size must be between 1 and 100, got {self.batch_size}")
        if self.per_item_timeout_ms <= 0:
            problems.append(f"per_item_timeout_ms must be positive, got {self.per_item_timeout_ms}")
        if self.safety_buffer_ms < 0:
            problems.append(f"safety_buffer_ms must be >= 0, got {self.safety_buffer_ms}")
        if self.wait_period_ms < 0:
            problems.append(f"wait_period_ms must be >= 0, got {self.wait_period_ms}")
        if self.phase_offset_ms < 0:
            problems.append(f"phase_offset_ms must be >= 0, got {self.phase_offset_ms}")
        if self.shutdown_wait_ms < 0:
            problems.append(f"shutdown_wait_ms must be >= 0, got {self.shutdown_wait_ms}")
        if self.tally_retention_days < 1:
            problems.append(f"tally_retention_days must be >= 1, got {self.tally_retention_days}")
        if not 1 <= self.max_workers <= 16:
            problems.append(f"max_workers must be between 1 and 16, got {self.max_workers}")
        if self.confirm_timeout_ms <= 0:
            problems.append(f"confirm_timeout_ms must be positive, got {self.confirm_timeout_ms}")

        if problems:
            raise ValidationError("invalid reconciler configuration: " + "; ".join(problems))
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
