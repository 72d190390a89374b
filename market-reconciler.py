#!/usr/bin/env python3
"""market-reconciler: keeps off-chain vote tallies and market deadlines in step with the ledger."""

from __future__ import annotations

import os
import sys
from typing import Any, Dict

# Ensure this script's real directory is on sys.path so that `from reconciler.X`
# works even when CLN loads the plugin via a symlink in the plugins directory.
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from pyln.client import Plugin

from reconciler.committer import OnChainCommitter
from reconciler.config import ReconcilerConfig
from reconciler.errors import ValidationError
from reconciler.ledger import LedgerGatewayClient
from reconciler.reconciler_service import ReconcilerService
from reconciler.store import ReconcilerStore

plugin = Plugin()
service: ReconcilerService | None = None

_DEFAULTS = ReconcilerConfig()


plugin.add_option(
    name="reconciler-db-path",
    default="~/.lightning/market_reconciler.db",
    description="SQLite path for tallies, pending subjects and commit failures",
)

plugin.add_option(
    name="reconciler-gateway",
    default="",
    description="Ledger gateway base URL (required unless reconciler-dry-run is set)",
)

plugin.add_option(
    name="reconciler-dry-run",
    default="false",
    description="Log decisions without writing to the ledger",
)

plugin.add_option(
    name="reconciler-vote-enabled",
    default="true",
    description="Run the vote-threshold reconciler",
)

plugin.add_option(
    name="reconciler-deadline-enabled",
    default="true",
    description="Run the deadline reconciler",
)

plugin.add_option(
    name="reconciler-run-on-start",
    default="true",
    description="Fire each reconciler once at startup",
)

# name -> (config field, description)
_INT_OPTIONS = {
    "reconciler-interval-ms": ("interval_ms", "Milliseconds between reconciliation runs"),
    "reconciler-min-votes": ("min_votes_required", "Minimum total votes before thresholds apply"),
    "reconciler-max-attempts": ("max_attempts", "Commit attempts per subject (1-10)"),
    "reconciler-initial-delay-ms": ("initial_delay_ms", "Backoff before the second attempt"),
    "reconciler-max-delay-ms": ("max_delay_ms", "Upper bound on backoff delay"),
    "reconciler-batch-size": ("batch_size", "Deadline subjects processed per run (1-100)"),
    "reconciler-item-timeout-ms": ("per_item_timeout_ms", "Time budget for one subject"),
    "reconciler-safety-buffer-ms": ("safety_buffer_ms", "Extra wait past the deadline before finalizing"),
    "reconciler-wait-period-ms": ("wait_period_ms", "Dispute window before a market can be finalized"),
    "reconciler-phase-offset-ms": ("phase_offset_ms", "Start delay of the deadline reconciler"),
    "reconciler-shutdown-wait-ms": ("shutdown_wait_ms", "How long shutdown waits for an in-flight run"),
    "reconciler-retention-days": ("tally_retention_days", "Days a tally survives without new votes"),
    "reconciler-max-workers": ("max_workers", "Subjects committed concurrently (1 = sequential)"),
    "reconciler-confirm-timeout-ms": ("confirm_timeout_ms", "Time to wait for ledger confirmation"),
}

_FLOAT_OPTIONS = {
    "reconciler-approval-threshold": ("approval_threshold_pct", "Percent of likes that approves a proposal"),
    "reconciler-reversal-threshold": ("reversal_threshold_pct", "Percent of agrees that reverses a resolution"),
    "reconciler-backoff-factor": ("backoff_factor", "Multiplier applied to each successive backoff"),
}

for _name, (_field, _description) in {**_INT_OPTIONS, **_FLOAT_OPTIONS}.items():
    plugin.add_option(name=_name, default=str(getattr(_DEFAULTS, _field)), description=_description)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _logger(message: str, level: str = "info") -> None:
    plugin.log(message, level=level)


def _require_service() -> ReconcilerService:
    if service is None:
        raise RuntimeError("service not initialized")
    return service


def _build_config(options: Dict[str, Any]) -> ReconcilerConfig:
    values: Dict[str, Any] = {
        "dry_run": _parse_bool(options.get("reconciler-dry-run")),
        "vote_enabled": _parse_bool(options.get("reconciler-vote-enabled", "true")),
        "deadline_enabled": _parse_bool(options.get("reconciler-deadline-enabled", "true")),
        "run_on_start": _parse_bool(options.get("reconciler-run-on-start", "true")),
    }
    for name, (field, _) in _INT_OPTIONS.items():
        values[field] = _parse_int(options.get(name), getattr(_DEFAULTS, field))
    for name, (field, _) in _FLOAT_OPTIONS.items():
        values[field] = _parse_float(options.get(name), getattr(_DEFAULTS, field))
    return ReconcilerConfig(**values).validate()


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs: Any) -> None:
    del kwargs

    db_path_opt = str(options.get("reconciler-db-path") or "~/.lightning/market_reconciler.db")
    db_path = os.path.expanduser(db_path_opt)
    if not os.path.isabs(db_path):
        lightning_dir = str(configuration.get("lightning-dir") or os.path.expanduser("~/.lightning"))
        db_path = os.path.join(lightning_dir, db_path)

    try:
        config = _build_config(options)
    except ValidationError as exc:
        plugin.log(f"market-reconciler disabled: {exc}", level="error")
        return

    gateway_url = str(options.get("reconciler-gateway") or "").strip()
    gateway = None
    if gateway_url:
        try:
            gateway = LedgerGatewayClient(gateway_url)
        except ValueError as exc:
            plugin.log(f"market-reconciler disabled: {exc}", level="error")
            return
    elif not config.dry_run:
        plugin.log("market-reconciler disabled: reconciler-gateway is required unless dry-run", level="error")
        return

    store = ReconcilerStore(
        db_path=db_path,
        logger=_logger,
        retention_days=config.tally_retention_days,
    )
    committer = OnChainCommitter(
        gateway=gateway,
        rpc=plugin.rpc,
        policy=config.retry_policy,
        logger=_logger,
        dry_run=config.dry_run,
        confirm_timeout_seconds=config.confirm_timeout_ms / 1000.0,
    )

    global service
    service = ReconcilerService(store=store, committer=committer, config=config, logger=_logger)

    started = service.start()
    if "error" in started:
        plugin.log(f"market-reconciler schedulers not started: {started['error']}", level="error")

    plugin.log(
        "market-reconciler initialized "
        f"(db_path={db_path}, dry_run={config.dry_run}, gateway={gateway_url or '-'})"
    )


@plugin.subscribe("shutdown")
def on_shutdown(plugin: Plugin, **kwargs: Any) -> None:
    del kwargs
    if service is not None:
        result = service.shutdown()
        plugin.log(f"market-reconciler stopped: {result['reconcilers']}")
    sys.exit(0)


@plugin.method("reconciler-status")
def reconciler_status(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().status()


@plugin.method("reconciler-run")
def reconciler_run(plugin: Plugin, kind: str = "all") -> Dict[str, Any]:
    del plugin
    return _require_service().run_now(kind=kind)


@plugin.method("reconciler-tally")
def reconciler_tally(plugin: Plugin, kind: str, subject_id: str) -> Dict[str, Any]:
    del plugin
    return _require_service().tally(kind=kind, subject_id=subject_id)


@plugin.method("reconciler-record-vote")
def reconciler_record_vote(plugin: Plugin, kind: str, subject_id: str, voter: str, choice: str) -> Dict[str, Any]:
    del plugin
    return _require_service().record_vote(kind=kind, subject_id=subject_id, voter=voter, choice=choice)


@plugin.method("reconciler-add-pending")
def reconciler_add_pending(plugin: Plugin, subject_id: str, ready_at: int, default_decision: str) -> Dict[str, Any]:
    del plugin
    return _require_service().add_pending(
        subject_id=subject_id,
        ready_at=_parse_int(ready_at, 0),
        default_decision=default_decision,
    )


@plugin.method("reconciler-set-state")
def reconciler_set_state(plugin: Plugin, subject_id: str, state: str) -> Dict[str, Any]:
    del plugin
    return _require_service().set_subject_state(subject_id=subject_id, state=state)


@plugin.method("reconciler-failures")
def reconciler_failures(plugin: Plugin, limit: int = 50) -> Dict[str, Any]:
    del plugin
    return _require_service().failures(limit=_parse_int(limit, 50))


@plugin.method("reconciler-prune")
def reconciler_prune(plugin: Plugin, retention_days: Any = None) -> Dict[str, Any]:
    del plugin
    if retention_days is not None:
        retention_days = _parse_int(retention_days, 0)
    return _require_service().prune(retention_days=retention_days)


if __name__ == "__main__":
    plugin.run()
