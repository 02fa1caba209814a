from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from logtiers.schemas.record import TIERS, format_ts
from logtiers.services import metrics
from logtiers.services.errors import FatalStoreError
from logtiers.services.index_manager import missing_indexes
from logtiers.services.leader import LeaderLease
from logtiers.services.runner import JOB_NAMES, build_runner
from logtiers.services.settings import Settings, StoreSettings

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _FakeSource:
    def __init__(self, events=None):
        self.events = events or []

    def fetch(self, start, end):
        return list(self.events)


def _settings(tmp_path) -> Settings:
    return Settings(store=StoreSettings(
        db_path=str(tmp_path / "t.db"),
        cursor_path=str(tmp_path / "cursor.json"),
        metrics_path=str(tmp_path / "metrics.json"),
    ))


def _doc(uid: str, ts: datetime, native_id=None, level="3") -> dict:
    return {"timestamp": format_ts(ts), "agent": {"name": "a"}, "rule": {"level": level},
            "nativeId": native_id, "uniqueIdentifier": uid}


@pytest.fixture(autouse=True)
def _isolated_metrics():
    yield
    metrics.configure(None)
    metrics.reset()


def test_registers_all_jobs(tmp_path):
    runner = build_runner(_settings(tmp_path), source=_FakeSource(), clock=lambda: NOW)
    assert runner.scheduler.job_names() == JOB_NAMES


def test_startup_creates_indexes(tmp_path):
    runner = build_runner(_settings(tmp_path), source=_FakeSource(), clock=lambda: NOW)
    report = runner.startup()
    assert report["failed"] == []
    assert missing_indexes(runner.store, TIERS) == []


def test_unopenable_store_refuses_to_start(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")
    settings = _settings(tmp_path)
    settings.store.db_path = str(blocker / "t.db")
    with pytest.raises(FatalStoreError):
        build_runner(settings, source=_FakeSource())


def test_ingest_job_records_metrics(tmp_path):
    alert = {"id": "n1", "timestamp": "2026-03-01T11:59:59Z", "rule": {"level": 3}}
    source = _FakeSource([{"message": {"message": json.dumps(alert)}}])
    runner = build_runner(_settings(tmp_path), source=source, clock=lambda: NOW)

    report = runner.run_once("ingest")

    assert report["inserted"] == 1
    assert runner.store.count("hot") == 1
    assert metrics.get_metrics()["jobs"]["ingest"]["runs"] == 1
    assert (tmp_path / "cursor.json").exists()


def test_full_maintenance_cycle(tmp_path):
    clock = _Clock(NOW)
    runner = build_runner(_settings(tmp_path), source=_FakeSource(), clock=clock)
    runner.store.upsert_many("hot", [
        _doc("fresh", NOW - DAY, level="error"),
        _doc("old", NOW - 10 * DAY),
        _doc("expired", NOW - 100 * DAY),
    ])

    runner.run_once("normalize_levels")
    runner.run_once("rollover")
    runner.run_once("retention")

    assert runner.store.find_by_unique_id("hot", "fresh")["rule"]["level"] == "12"
    assert runner.store.find_by_unique_id("warm", "old") is not None
    assert runner.store.tier_counts() == {"hot": 1, "warm": 1, "cold": 0}
    snapshot = metrics.get_metrics()
    assert snapshot["records_migrated_total"] == 3
    assert snapshot["records_expired_total"] == 1


def test_dedup_then_missing_unique_index_is_retried(tmp_path):
    runner = build_runner(_settings(tmp_path), source=_FakeSource(), clock=lambda: NOW)
    runner.store.insert_many("hot", [_doc("dup", NOW, "n1"), _doc("dup", NOW, "n1")])
    startup = runner.startup()
    assert "hot.unique_identifier" in startup["failed"]

    report = runner.run_once("dedup")

    assert report["removed"] == 1
    assert report["indexes"]["failed"] == []
    assert missing_indexes(runner.store, TIERS) == []


def test_non_leader_skips_jobs(tmp_path):
    settings = _settings(tmp_path)
    runner = build_runner(settings, source=_FakeSource(), clock=lambda: NOW)
    rival = LeaderLease(runner.store, ttl=timedelta(seconds=30), holder="rival", clock=lambda: NOW)
    assert rival.acquire()

    assert runner.run_once("retention") is None
    assert "retention" not in metrics.get_metrics()["jobs"]


def test_stop_releases_lease(tmp_path):
    settings = _settings(tmp_path)
    runner = build_runner(settings, source=_FakeSource(), clock=lambda: NOW)
    runner.run_once("retention")
    assert runner.lease.is_leader
    runner.stop()
    assert not runner.lease.is_leader
