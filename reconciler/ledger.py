"""HTTP client for the ledger gateway that submits signed commit operations."""

from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from typing import Any, Dict, Optional
from urllib.parse import quote, urlparse

from reconciler.errors import (
    AuthorizationError,
    ReconcilerError,
    RequestRejectedError,
    StateConflictError,
    TransientError,
)

AUTH_STATUSES = {401, 403}
CONFLICT_STATUSES = {409, 410}
TRANSIENT_STATUSES = {408, 425, 429}

AUTH_MARKERS = ("unauthorized", "forbidden", "invalid signer", "signer mismatch")
CONFLICT_MARKERS = ("already finalized", "already resolved", "invalidstate", "invalid state")
TRANSIENT_MARKERS = ("429", "too many requests", "timeout", "timed out", "blockhash not found")


def classify_ledger_error(status: Optional[int], message: str) -> ReconcilerError:
    """Map an HTTP status and/or a ledger error message onto the error taxonomy.

    Other 4xx statuses are rejections that a retry cannot fix; anything else
    unrecognised is treated as transient.
    """
    text = (message or "").lower()

    if status in AUTH_STATUSES or any(marker in text for marker in AUTH_MARKERS):
        return AuthorizationError(message or f"ledger rejected signer (HTTP {status})", status=status)
    if status in CONFLICT_STATUSES or any(marker in text for marker in CONFLICT_MARKERS):
        return StateConflictError(message or f"subject not in a committable state (HTTP {status})", status=status)
    if status in TRANSIENT_STATUSES or (status is not None and status >= 500):
        return TransientError(message or f"ledger gateway unavailable (HTTP {status})", status=status)
    if status is not None and 400 <= status < 500:
        return RequestRejectedError(message or f"ledger gateway rejected request (HTTP {status})", status=status)
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return TransientError(message, status=status)
    return TransientError(message or "unclassified ledger error", status=status)


def _is_valid_gateway_url(url: str) -> bool:
    if not isinstance(url, str) or not url.strip():
        return False
    parsed = urlparse(url)
    if parsed.scheme not in ("https", "http"):
        return False
    return bool(parsed.netloc and parsed.hostname)


class LedgerGatewayClient:
    """Small JSON client for the ledger gateway."""

    def __init__(self, base_url: str, timeout_seconds: float = 10):
        if not _is_valid_gateway_url(base_url):
            raise ValueError(f"invalid ledger gateway URL: {base_url!r}")
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = None
        headers = {"Accept": "application/json"}
        if payload is not None:
            body = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(
            f"{self.base_url}{path}",
            data=body,
            headers=headers,
            method=method,
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise classify_ledger_error(exc.code, self._error_message(exc)) from exc
        except urllib.error.URLError as exc:
            raise TransientError(f"ledger gateway unreachable: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise TransientError(f"ledger gateway timed out after {self.timeout_seconds}s") from exc

        try:
            data = json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            raise TransientError(f"ledger gateway returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise TransientError("ledger gateway returned a non-object response")
        return data

    @staticmethod
    def _error_message(exc: urllib.error.HTTPError) -> str:
        try:
            raw = exc.read().decode("utf-8")
        except (OSError, AttributeError):
            return str(exc.reason or "")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return raw.strip() or str(exc.reason or "")
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return str(exc.reason or "")

    def submit_commit(self, operation: Dict[str, Any], signature: str, signer: str) -> str:
        payload = {"operation": operation, "signature": signature, "signer": signer}
        data = self._request("POST", "/v1/commits", payload)
        tx_ref = data.get("tx_ref")
        if isinstance(tx_ref, str) and tx_ref:
            return tx_ref
        if data.get("error"):
            raise classify_ledger_error(None, str(data["error"]))
        raise TransientError("ledger gateway response missing tx_ref")

    def get_commit_status(self, tx_ref: str) -> Dict[str, Any]:
        safe_ref = quote(tx_ref, safe="")
        return self._request("GET", f"/v1/commits/{safe_ref}")

    def get_authority(self) -> str:
        data = self._request("GET", "/v1/authority")
        return str(data.get("authority", "") or "")
