"""
tests/test_scenarios.py

End-to-end checks over ingestion, rollover, dedup, retention and reads with a
manually advanced clock:
  1. No record is lost across the lifecycle
  2. Migration is idempotent
  3. uniqueIdentifier is unique inside every tier
  4. Age routing on both sides of each threshold
  5. Dedup keeps exactly one, the earliest
  6. Fan-out totals stay correct with a failing tier
  7. Pages spanning two tiers are ordered by timestamp
  8. Three-event ingestion scenario
  9. Crash between target write and source delete
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from logtiers.schemas.record import TIERS, format_ts
from logtiers.services.cursor_store import IngestionCursor
from logtiers.services.dedup import dedup_all
from logtiers.services.errors import StoreError
from logtiers.services.fanout import FanOut
from logtiers.services.index_manager import ensure_indexes
from logtiers.services.ingestion import run_ingestion
from logtiers.services.migrator import migrate_tier, run_rollover
from logtiers.services.retention import reap_expired
from logtiers.services.settings import IngestionSettings
from logtiers.services.tier_store import RecordFilter, TierStore
from logtiers.services.tiers import TierPolicy

START = datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)
POLICY = TierPolicy()


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class _Source:
    def __init__(self):
        self.events = []

    def fetch(self, start, end):
        return list(self.events)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _raw(native_id, ts: datetime, level=5, extra=None) -> dict:
    alert = {
        "timestamp": ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "+0000",
        "agent": {"name": "web-01"},
        "rule": {"level": level, "description": "test"},
    }
    if native_id is not None:
        alert["id"] = native_id
    if extra:
        alert.update(extra)
    return {"message": {"source": "wazuh", "message": json.dumps(alert)}}


def _env(tmp_path):
    clock = _Clock(START)
    store = TierStore(str(tmp_path / "t.db"), clock=clock)
    ensure_indexes(store, TIERS)
    return clock, store


def _ingest(store, source, now, cursor=None):
    return run_ingestion(source, store, cursor or IngestionCursor(), now, IngestionSettings())


def _all_uids(store) -> list:
    out = []
    for tier in TIERS:
        out.extend(d["uniqueIdentifier"] for d in store.find(tier, limit=100000))
    return out


def _doc(uid: str, ts: datetime, level: str = "3") -> dict:
    return {"timestamp": format_ts(ts), "agent": {"name": "a"}, "rule": {"level": level}, "uniqueIdentifier": uid}


# ---------------------------------------------------------------------------
# 1. No data loss
# ---------------------------------------------------------------------------

def test_no_data_loss_over_lifecycle(tmp_path):
    clock, store = _env(tmp_path)
    source = _Source()
    ingested = 0
    deduped = 0
    expired = 0

    for day in range(0, 120, 3):
        clock.now = START + day * DAY
        source.events = [_raw(f"d{day}-{i}", clock.now - timedelta(minutes=i)) for i in range(4)]
        # Same upstream id re-sent with a different body: a dedup candidate.
        source.events.append(_raw(f"d{day}-0", clock.now + timedelta(seconds=1), extra={"retry": True}))
        _, report = _ingest(store, source, clock.now)
        ingested += report["inserted"]

        run_rollover(store, POLICY, clock.now, batch_size=3)
        deduped += dedup_all(store, TIERS)["removed"]
        expired += reap_expired(store, POLICY, clock.now)["deleted"]

        assert sum(store.tier_counts().values()) + deduped + expired == ingested

    assert expired > 0
    assert deduped > 0


# ---------------------------------------------------------------------------
# 2. Idempotent migration
# ---------------------------------------------------------------------------

def test_rerunning_rollover_is_a_no_op(tmp_path):
    clock, store = _env(tmp_path)
    store.upsert_many("hot", [_doc(f"u{i}", START - (8 + i) * DAY) for i in range(5)])
    run_rollover(store, POLICY, START)
    before = {tier: sorted(d["uniqueIdentifier"] for d in store.find(tier, limit=100)) for tier in TIERS}

    again = run_rollover(store, POLICY, START)

    assert again["processed"] == 0
    assert again["failed"] == 0
    assert {tier: sorted(d["uniqueIdentifier"] for d in store.find(tier, limit=100)) for tier in TIERS} == before


# ---------------------------------------------------------------------------
# 3. Uniqueness
# ---------------------------------------------------------------------------

def test_unique_identifier_unique_per_tier(tmp_path):
    clock, store = _env(tmp_path)
    source = _Source()
    source.events = [_raw("a", START), _raw("b", START), _raw("a", START)]
    for _ in range(3):
        _ingest(store, source, START)

    for tier in TIERS:
        uids = [d["uniqueIdentifier"] for d in store.find(tier, limit=1000)]
        assert len(uids) == len(set(uids))
    assert store.count("hot") == 2


# ---------------------------------------------------------------------------
# 4. Age routing on both sides of each threshold
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "age,tier",
    [
        (7 * DAY - timedelta(seconds=1), "hot"),
        (7 * DAY, "warm"),
        (21 * DAY - timedelta(seconds=1), "warm"),
        (21 * DAY, "cold"),
        (90 * DAY - timedelta(seconds=1), "cold"),
        (90 * DAY, None),
    ],
)
def test_age_routing_boundaries(tmp_path, age, tier):
    clock, store = _env(tmp_path)
    store.upsert_many("hot", [_doc("x", START - age)])

    run_rollover(store, POLICY, START)
    reap_expired(store, POLICY, START)

    where = [t for t in TIERS if store.find_by_unique_id(t, "x") is not None]
    assert where == ([tier] if tier else [])
    assert POLICY.tier_for_age(age) == tier


# ---------------------------------------------------------------------------
# 5. Dedup keeps exactly one, the earliest
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("n", [2, 3, 7])
def test_dedup_keeps_earliest_of_n(tmp_path, n):
    clock, store = _env(tmp_path)
    source = _Source()
    for i in range(n):
        source.events = [_raw("same", START + timedelta(seconds=i), extra={"attempt": i})]
        _ingest(store, source, clock.now)
        clock.advance(timedelta(seconds=1))

    dedup_all(store, TIERS)

    survivors = store.find_by_native_id("hot", "same")
    assert len(survivors) == 1
    assert survivors[0]["rawLog"]["attempt"] == 0


# ---------------------------------------------------------------------------
# 6. Fan-out totals with a failing tier
# ---------------------------------------------------------------------------

def test_fanout_total_matches_per_tier_counts_with_failure(tmp_path, monkeypatch):
    clock, store = _env(tmp_path)
    store.upsert_many("hot", [_doc(f"h{i}", START - i * timedelta(hours=1), level="12") for i in range(4)])
    store.upsert_many("warm", [_doc(f"w{i}", START - (8 + i) * DAY) for i in range(3)])
    store.upsert_many("cold", [_doc(f"c{i}", START - (30 + i) * DAY) for i in range(2)])
    fanout = FanOut(store, POLICY, clock=clock)

    flt = RecordFilter(since=START - 90 * DAY)
    independent = {tier: store.count(tier, flt) for tier in TIERS}
    assert fanout.count("90d").total == sum(independent.values())

    real = store.count

    def _flaky(tier, flt=None):
        if tier == "cold":
            raise StoreError("cold offline")
        return real(tier, flt)

    monkeypatch.setattr(store, "count", _flaky)
    partial = fanout.count("90d")

    assert partial.failed_tiers == ["cold"]
    assert partial.total == independent["hot"] + independent["warm"]


# ---------------------------------------------------------------------------
# 7. Ordering across a tier boundary
# ---------------------------------------------------------------------------

def test_page_spanning_hot_and_warm_is_time_ordered(tmp_path):
    clock, store = _env(tmp_path)
    # Hot still holds records older than some warm ones (rollover not yet run).
    store.upsert_many("hot", [_doc(f"h{i}", START - timedelta(days=i, hours=6)) for i in range(10)])
    store.upsert_many("warm", [_doc(f"w{i}", START - timedelta(days=7 + i)) for i in range(5)])
    fanout = FanOut(store, POLICY, clock=clock)

    seen = []
    for skip in range(0, 15, 4):
        seen.extend(fanout.page("30d", limit=4, skip=skip).records)

    stamps = [r.timestamp for r in seen]
    assert stamps == sorted(stamps, reverse=True)
    assert len({r.unique_identifier for r in seen}) == 15
    tiers_in_order = ["h" if r.unique_identifier.startswith("h") else "w" for r in seen]
    assert tiers_in_order != sorted(tiers_in_order)  # interleaved, not grouped by tier


# ---------------------------------------------------------------------------
# 8. Three raw events
# ---------------------------------------------------------------------------

def test_three_event_scenario(tmp_path):
    clock, store = _env(tmp_path)
    source = _Source()
    source.events = [
        _raw("n1", START - timedelta(seconds=2), level=12, extra={"body": "first"}),
        _raw("n1", START - timedelta(seconds=1), level=3, extra={"body": "second"}),
        _raw("n2", START - timedelta(seconds=30), level=5),
    ]
    _ingest(store, source, START)
    assert store.count("hot") == 3

    dedup_all(store, TIERS)

    survivors = store.find("hot", limit=10)
    assert len({d["uniqueIdentifier"] for d in survivors}) == 2
    assert {d["nativeId"] for d in survivors} == {"n1", "n2"}
    assert store.count("hot", RecordFilter(min_level=12)) == 1
    assert store.count("hot", RecordFilter(min_level=5)) == 2


# ---------------------------------------------------------------------------
# 9. Aging out and crash recovery
# ---------------------------------------------------------------------------

def test_record_moves_to_warm_after_t1(tmp_path):
    clock, store = _env(tmp_path)
    source = _Source()
    source.events = [_raw("n1", START)]
    _ingest(store, source, START)
    uid = store.find("hot", limit=1)[0]["uniqueIdentifier"]

    clock.advance(7 * DAY + timedelta(seconds=1))
    run_rollover(store, POLICY, clock.now)

    assert store.find_by_unique_id("hot", uid) is None
    assert store.find_by_unique_id("warm", uid)["uniqueIdentifier"] == uid


def test_crash_between_upsert_and_delete_then_rerun(tmp_path, monkeypatch):
    clock, store = _env(tmp_path)
    store.upsert_many("hot", [_doc("x", START - 8 * DAY)])
    real_delete = store.delete_by_unique_ids

    def _crash(tier, uids):
        raise StoreError("process killed")

    monkeypatch.setattr(store, "delete_by_unique_ids", _crash)
    migrate_tier(store, "hot", "warm", START - 7 * DAY)
    assert store.find_by_unique_id("hot", "x") is not None
    assert store.find_by_unique_id("warm", "x") is not None

    monkeypatch.setattr(store, "delete_by_unique_ids", real_delete)
    migrate_tier(store, "hot", "warm", START - 7 * DAY)

    assert store.find_by_unique_id("hot", "x") is None
    assert _all_uids(store).count("x") == 1
