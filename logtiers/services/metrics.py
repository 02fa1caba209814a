"""
logtiers/services/metrics.py

Thread-safe in-memory counters with optional JSON persistence.
Tracks per-job run counters and record totals across maintenance jobs.

Public API:
    configure(path)
    record_job(name, report)
    increment_counter(name, amount=1)
    get_metrics() -> dict
    reset()
    rehydrate()
"""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_METRICS_FILE: Optional[Path] = None
_lock = threading.Lock()

# ---------------------------------------------------------------------------
# Counter state
# ---------------------------------------------------------------------------

_DEFAULT_COUNTERS: Dict[str, Any] = {
    "records_ingested_total": 0,
    "records_dropped_total": 0,
    "records_migrated_total": 0,
    "records_deduplicated_total": 0,
    "records_expired_total": 0,
    "levels_normalized_total": 0,
    "jobs": {},
}

_JOB_FIELDS = ("runs", "processed", "succeeded", "failed")

# job name -> list of (report key, total counter) pairs
_JOB_TOTALS = {
    "ingest": [("inserted", "records_ingested_total"), ("dropped", "records_dropped_total")],
    "rollover": [("succeeded", "records_migrated_total")],
    "dedup": [("removed", "records_deduplicated_total")],
    "retention": [("deleted", "records_expired_total")],
    "normalize_levels": [("succeeded", "levels_normalized_total")],
}

_counters: Dict[str, Any] = json.loads(json.dumps(_DEFAULT_COUNTERS))


def _ensure_counter_shape() -> None:
    """Ensure all expected metric keys exist. Caller must hold _lock."""
    for key, value in _DEFAULT_COUNTERS.items():
        if key not in _counters:
            _counters[key] = json.loads(json.dumps(value))


def _persist() -> None:
    """Write current counters to the metrics file. Caller must hold _lock."""
    if _METRICS_FILE is None:
        return
    try:
        _METRICS_FILE.parent.mkdir(parents=True, exist_ok=True)
        _METRICS_FILE.write_text(json.dumps(_counters, indent=2), encoding="utf-8")
    except OSError as exc:
        logger.warning(f"Failed to persist metrics: {exc}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def configure(path: Optional[Path]) -> None:
    """Set (or clear, with None) the file counters are persisted to."""
    global _METRICS_FILE
    with _lock:
        _METRICS_FILE = Path(path) if path else None


def record_job(name: str, report: Dict[str, Any]) -> None:
    """Update counters after one job run.

    report keys used: processed, succeeded, failed, plus the job-specific keys
    feeding the record totals (inserted/dropped, removed, deleted, ...).
    """
    with _lock:
        _ensure_counter_shape()
        job = _counters["jobs"].setdefault(name, {field: 0 for field in _JOB_FIELDS})
        job["runs"] += 1
        for field in ("processed", "succeeded", "failed"):
            job[field] += int(report.get(field, 0) or 0)

        for report_key, counter in _JOB_TOTALS.get(name, []):
            _counters[counter] += int(report.get(report_key, 0) or 0)

        _persist()


def increment_counter(name: str, amount: int = 1) -> None:
    with _lock:
        _ensure_counter_shape()
        if name not in _counters:
            _counters[name] = 0
        if not isinstance(_counters.get(name), int):
            raise ValueError(f"Metric '{name}' is not an integer counter")
        _counters[name] += amount
        _persist()


def get_metrics() -> Dict[str, Any]:
    """Return a snapshot of current counters."""
    with _lock:
        _ensure_counter_shape()
        return json.loads(json.dumps(_counters))


def reset() -> None:
    with _lock:
        _counters.clear()
        _counters.update(json.loads(json.dumps(_DEFAULT_COUNTERS)))
        _persist()


def rehydrate() -> None:
    """Load persisted counters, if the metrics file exists and is readable."""
    with _lock:
        path = _METRICS_FILE
    if path is None or not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning(f"Failed to read {path}, starting from zero: {exc}")
        return
    if not isinstance(data, dict) or "records_ingested_total" not in data:
        logger.warning(f"Ignoring unrecognised metrics file {path}")
        return
    with _lock:
        _counters.update(data)
        _ensure_counter_shape()
    logger.info(f"Metrics rehydrated from {path}")
