"""
logtiers/services/runner.py

Wires the store, the upstream source and the maintenance jobs together.

Jobs: ingest, rollover, dedup, retention, normalize_levels. Each run first
takes (or renews) the leader lease; a process that is not the leader skips the
run. Every run that does work ends with an INFO summary and updates the job
counters in ``metrics``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from logtiers.services import metrics
from logtiers.services.cursor_store import CursorStore
from logtiers.services.dedup import dedup_all
from logtiers.services.index_manager import ensure_indexes, missing_indexes
from logtiers.services.ingestion import IngestionJob
from logtiers.services.leader import LeaderLease
from logtiers.services.levels import normalize_levels
from logtiers.services.migrator import run_rollover
from logtiers.services.retention import reap_expired
from logtiers.services.scheduler import Scheduler
from logtiers.services.settings import Settings
from logtiers.services.source import EventSource, GraylogSource
from logtiers.services.tier_store import TierStore
from logtiers.services.tiers import TierPolicy

logger = logging.getLogger(__name__)

JOB_NAMES = ["ingest", "rollover", "dedup", "retention", "normalize_levels"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MaintenanceRunner:
    def __init__(
        self,
        settings: Settings,
        store: TierStore,
        source: EventSource,
        cursor_store: CursorStore,
        clock: Callable[[], datetime] = _utcnow,
        lease: Optional[LeaderLease] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.policy = TierPolicy.from_settings(settings.tiers)
        self.clock = clock
        self.lease = lease or LeaderLease(
            store, ttl=timedelta(seconds=settings.schedule.lease_ttl_seconds), clock=clock
        )
        self.ingestion = IngestionJob(source, store, cursor_store, settings.ingestion, clock=clock)
        self.scheduler = Scheduler()
        self._register_jobs()

    # ------------------------------------------------------------------
    # Job bodies
    # ------------------------------------------------------------------

    def _ingest(self) -> Dict[str, Any]:
        return self.ingestion.run()

    def _rollover(self) -> Dict[str, Any]:
        return run_rollover(
            self.store, self.policy, self.clock(), self.settings.migration.batch_size
        )

    def _dedup(self) -> Dict[str, Any]:
        report = dedup_all(self.store, self.policy.tiers)
        # A uniqueness index cannot be built while duplicates exist; retry once
        # the cleanup has run.
        missing = missing_indexes(self.store, self.policy.tiers)
        if missing:
            logger.info(f"Retrying {len(missing)} missing index(es) after dedup")
            report["indexes"] = ensure_indexes(self.store, self.policy.tiers)
        return report

    def _retention(self) -> Dict[str, Any]:
        return reap_expired(self.store, self.policy, self.clock())

    def _normalize_levels(self) -> Dict[str, Any]:
        return normalize_levels(self.store, self.policy.tiers)

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _register_jobs(self) -> None:
        schedule = self.settings.schedule
        bodies = {
            "ingest": (schedule.poll_interval_seconds, self._ingest),
            "rollover": (schedule.rollover_interval_seconds, self._rollover),
            "dedup": (schedule.dedup_interval_seconds, self._dedup),
            "retention": (schedule.retention_interval_seconds, self._retention),
            "normalize_levels": (schedule.level_normalize_interval_seconds, self._normalize_levels),
        }
        for name in JOB_NAMES:
            interval, body = bodies[name]
            self.scheduler.add_job(name, interval, self._leader_gated(name, body))

    def _leader_gated(self, name: str, body: Callable[[], Dict[str, Any]]) -> Callable[[], Optional[Dict[str, Any]]]:
        def run() -> Optional[Dict[str, Any]]:
            if not self.lease.acquire():
                logger.debug(f"Skipping {name}: not the leader")
                return None
            report = body()
            metrics.record_job(name, report)
            logger.info(
                f"Job {name} finished: processed={report.get('processed', 0)} "
                f"succeeded={report.get('succeeded', 0)} failed={report.get('failed', 0)}"
            )
            return report

        return run

    def startup(self) -> Dict[str, Any]:
        """Ensure indexes on every tier. Index failures are reported, not raised."""
        return ensure_indexes(self.store, self.policy.tiers)

    def run_once(self, name: str) -> Optional[Dict[str, Any]]:
        return self.scheduler.trigger(name)

    def start(self) -> None:
        self.startup()
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        if self.lease.is_leader:
            self.lease.release()
        self.store.close()


def build_runner(
    settings: Settings,
    source: Optional[EventSource] = None,
    clock: Callable[[], datetime] = _utcnow,
) -> MaintenanceRunner:
    """Open the store and build the runner. FatalStoreError propagates."""
    store = TierStore(settings.store.db_path, clock=clock)
    if source is None:
        source = GraylogSource(
            settings.source,
            limit=settings.ingestion.fetch_limit,
            timeout=settings.ingestion.fetch_timeout_seconds,
        )
    metrics.configure(Path(settings.store.metrics_path) if settings.store.metrics_path else None)
    metrics.rehydrate()
    return MaintenanceRunner(
        settings,
        store,
        source,
        CursorStore(Path(settings.store.cursor_path)),
        clock=clock,
    )
