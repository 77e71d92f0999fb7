"""
Persistent Deployment Audit Log: logs/audit.py

Append-only, hash-chained, structured JSON log of every deployment run.

Logs every:
  - Deployment lifecycle event (start, graph rejected, complete)
  - Resource state transition (pending → provisioning → ready / failed / skipped)
  - Secret write (name and producer only, values are never logged)
  - Access grant creation

Each record carries `prev_hash` (SHA-256 of the previous record) and
`chain_hash` (SHA-256 of itself, including prev_hash). Modifying any past
record breaks every subsequent hash; verify_chain() detects it.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

LOG_DIR  = Path(os.getenv("AUDIT_LOG_DIR", "logs"))
LOG_FILE = LOG_DIR / "audit.jsonl"

# All valid severity strings.  log() raises ValueError for anything else.
SEVERITY_LEVELS = frozenset({"debug", "info", "warning", "error", "critical"})

# prev_hash of the very first record
GENESIS_HASH = hashlib.sha256(b"").hexdigest()


def _record_hash(record: Dict) -> str:
    """
    Deterministic SHA-256 of a log record, excluding its own `chain_hash`.
    """
    stable = {k: v for k, v in record.items() if k != "chain_hash"}
    serialised = json.dumps(stable, sort_keys=True, default=str).encode()
    return hashlib.sha256(serialised).hexdigest()


class AuditLogger:
    """
    Append-only, hash-chained structured audit logger.
    Thread-safe. Survives process restarts (append mode; the last chain hash
    is re-read from disk on construction). Each line is one JSON record.
    """

    def __init__(self, log_file: Path = LOG_FILE) -> None:
        self._log_file  = Path(log_file)
        self._lock      = threading.Lock()
        self._log_file.parent.mkdir(parents=True, exist_ok=True)

        # In-memory buffer of recent entries
        self._buffer:     List[Dict] = []
        self._max_buffer: int        = 500

        self._last_hash: str = self._read_last_hash()

        # Persistent, line-buffered handle; closed by shutdown()
        self._fh = open(self._log_file, "a", encoding="utf-8", buffering=1)

    # ── Internal write ────────────────────────────────────────────────────────

    def _read_last_hash(self) -> str:
        if not self._log_file.exists():
            return GENESIS_HASH
        try:
            last_line = ""
            with open(self._log_file, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        last_line = line
            if last_line:
                record = json.loads(last_line)
                return record.get("chain_hash", GENESIS_HASH)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Could not read last audit hash, starting new chain: %s", exc)
        return GENESIS_HASH

    def _write(self, record: Dict) -> None:
        with self._lock:
            record["prev_hash"]  = self._last_hash
            record["chain_hash"] = _record_hash(record)
            self._last_hash      = record["chain_hash"]

            self._fh.write(json.dumps(record, default=str) + "\n")

            self._buffer.append(record)
            if len(self._buffer) > self._max_buffer:
                self._buffer = self._buffer[-self._max_buffer:]

    # ── Public API ────────────────────────────────────────────────────────────

    def log(
        self,
        event_type:    str,
        severity:      str                      = "info",
        deployment_id: Optional[str]            = None,
        resource_id:   Optional[str]            = None,
        stage:         Optional[str]            = None,
        message:       str                      = "",
        data:          Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Append one structured event to the audit log.
        Raises ValueError if severity is not in SEVERITY_LEVELS.
        """
        if severity not in SEVERITY_LEVELS:
            raise ValueError(
                f"Invalid severity '{severity}'. "
                f"Must be one of: {sorted(SEVERITY_LEVELS)}"
            )

        record: Dict[str, Any] = {
            "ts":            time.time(),
            "ts_iso":        time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "event":         event_type,
            "severity":      severity,
            "deployment_id": deployment_id,
            "resource_id":   resource_id,
            "stage":         stage,
            "message":       message,
            "data":          data or {},
        }
        self._write(record)

    def shutdown(self) -> None:
        """Flush and close the file handle. Safe to call multiple times."""
        with self._lock:
            if self._fh and not self._fh.closed:
                self._fh.flush()
                self._fh.close()

    # ── Chain verification ────────────────────────────────────────────────────

    def verify_chain(self) -> Tuple[bool, Optional[int], int]:
        """
        Read the log from disk and verify the full hash chain.

        Returns (ok, first_broken_index, total_records).
        """
        if not self._log_file.exists():
            return True, None, 0

        records: List[Dict] = []
        try:
            with open(self._log_file, encoding="utf-8") as f:
                for idx, line in enumerate(f):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(json.loads(line))
                    except json.JSONDecodeError:
                        logger.warning("verify_chain: unparseable record at line %d", idx)
                        return False, len(records), len(records)
        except OSError as exc:
            logger.error("verify_chain: could not read log file: %s", exc)
            return False, 0, 0

        expected_prev = GENESIS_HASH
        for idx, record in enumerate(records):
            if record.get("prev_hash") != expected_prev:
                logger.warning(
                    "Chain broken at record %d: expected prev_hash=%s got=%s",
                    idx, expected_prev, record.get("prev_hash"),
                )
                return False, idx, len(records)

            expected_hash = _record_hash(record)
            if record.get("chain_hash") != expected_hash:
                logger.warning(
                    "Chain broken at record %d: chain_hash mismatch expected=%s got=%s",
                    idx, expected_hash, record.get("chain_hash"),
                )
                return False, idx, len(records)

            expected_prev = record["chain_hash"]

        return True, None, len(records)

    # ── Buffer / read API ─────────────────────────────────────────────────────

    def get_recent(
        self,
        limit:         int           = 100,
        deployment_id: Optional[str] = None,
    ) -> List[Dict]:
        """Recent entries, most recent first. Filters before limiting."""
        with self._lock:
            entries = list(self._buffer)

        if deployment_id:
            entries = [e for e in entries if e.get("deployment_id") == deployment_id]

        return list(reversed(entries[-limit:]))

    def read_all(self) -> List[Dict]:
        """Read all log entries from disk (no chain verification)."""
        if not self._log_file.exists():
            return []
        entries: List[Dict] = []
        try:
            with open(self._log_file, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        try:
                            entries.append(json.loads(line))
                        except json.JSONDecodeError:
                            logger.warning("read_all: skipping unparseable record")
        except OSError as exc:
            logger.error("read_all: could not read log file: %s", exc)
        return entries

    # ── Convenience wrappers ──────────────────────────────────────────────────

    def deployment_started(
        self, deployment_id: str, resource_count: int, batches: List[List[str]],
    ) -> None:
        self.log(
            "DEPLOYMENT_STARTED", "info", deployment_id=deployment_id, stage="init",
            message=f"Deployment started: {resource_count} resources in {len(batches)} batches",
            data={"resource_count": resource_count, "batches": batches},
        )

    def graph_rejected(self, deployment_id: str, kind: str, detail: str) -> None:
        self.log(
            "GRAPH_REJECTED", "error", deployment_id=deployment_id, stage="validate",
            message=f"Graph rejected [{kind}]: {detail}",
            data={"kind": kind, "detail": detail},
        )

    def resource_state(
        self,
        deployment_id: str,
        resource_id:   str,
        kind:          str,
        previous:      str,
        state:         str,
        error:         Optional[str] = None,
    ) -> None:
        severity = "error" if state == "failed" else "warning" if state == "skipped" else "info"
        self.log(
            "RESOURCE_STATE", severity, deployment_id=deployment_id,
            resource_id=resource_id, stage="provision",
            message=f"{resource_id}: {previous} -> {state}" + (f" ({error})" if error else ""),
            data={"kind": kind, "previous": previous, "state": state, "error": error},
        )

    def secret_written(self, deployment_id: str, resource_id: str, name: str) -> None:
        self.log(
            "SECRET_WRITTEN", "info", deployment_id=deployment_id,
            resource_id=resource_id, stage="secrets",
            message=f"Secret stored: {name}",
            data={"name": name, "producer": resource_id},
        )

    def grant_created(
        self,
        deployment_id: str,
        principal_id:  str,
        target_id:     str,
        role:          str,
        grant_id:      str,
    ) -> None:
        self.log(
            "GRANT_CREATED", "info", deployment_id=deployment_id, stage="grants",
            message=f"Access granted: {principal_id} -> {target_id} ({role})",
            data={
                "principal_id": principal_id,
                "target_id":    target_id,
                "role":         role,
                "grant_id":     grant_id,
            },
        )

    def deployment_complete(
        self,
        deployment_id: str,
        succeeded:     bool,
        counts:        Dict[str, int],
        duration:      float,
    ) -> None:
        self.log(
            "DEPLOYMENT_COMPLETE", "info" if succeeded else "error",
            deployment_id=deployment_id, stage="complete",
            message=(
                f"Deployment {'succeeded' if succeeded else 'finished with failures'} "
                f"in {duration:.1f}s: {counts}"
            ),
            data={"succeeded": succeeded, "counts": counts, "duration_seconds": duration},
        )


# ── Global singleton ──────────────────────────────────────────────────────────

_audit: Optional[AuditLogger] = None
_audit_lock = threading.Lock()


def get_audit() -> AuditLogger:
    """Return the process-wide AuditLogger singleton, creating it if needed."""
    global _audit
    if _audit is None:
        with _audit_lock:
            if _audit is None:
                _audit = AuditLogger()
    return _audit


def reset_audit(log_file: Optional[Path] = None) -> AuditLogger:
    """
    Replace the singleton with a fresh instance.
    Intended for testing only; do not call in production.
    """
    global _audit
    with _audit_lock:
        if _audit is not None:
            _audit.shutdown()
        _audit = AuditLogger(log_file or LOG_FILE)
        return _audit
