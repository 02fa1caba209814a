from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from logtiers.schemas.record import BOOKKEEPING_FIELDS, format_ts
from logtiers.services.errors import BulkWriteResult, PartialBatchFailure, StoreError, WriteError
from logtiers.services.migrator import migrate_tier, prepare_for_target, run_rollover
from logtiers.services.tier_store import TierStore
from logtiers.services.tiers import TierPolicy

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _store(tmp_path, clock=None) -> TierStore:
    return TierStore(str(tmp_path / "t.db"), clock=clock or _Clock(NOW))


def _doc(uid: str, ts: datetime) -> dict:
    return {
        "timestamp": format_ts(ts),
        "agent": {"name": "web-01"},
        "rule": {"level": "5", "description": "d"},
        "rawLog": {"uid": uid},
        "nativeId": uid,
        "uniqueIdentifier": uid,
    }


def _uids(store: TierStore, tier: str) -> set:
    return {d["uniqueIdentifier"] for d in store.find(tier, limit=100000)}


# ---------------------------------------------------------------------------
# prepare_for_target
# ---------------------------------------------------------------------------

def test_prepare_strips_and_preserves_bookkeeping():
    doc = {"_id": 4, "createdAt": "c1", "updatedAt": "u1", "uniqueIdentifier": "x"}
    out = prepare_for_target(doc)
    assert out == {"uniqueIdentifier": "x", "originalCreatedAt": "c1", "originalUpdatedAt": "u1"}
    assert not set(BOOKKEEPING_FIELDS) & set(out)


def test_prepare_keeps_first_originals_on_second_hop():
    doc = {"_id": 9, "createdAt": "c2", "updatedAt": "u2", "originalCreatedAt": "c1",
           "originalUpdatedAt": "u1", "uniqueIdentifier": "x"}
    out = prepare_for_target(doc)
    assert out["originalCreatedAt"] == "c1"
    assert out["originalUpdatedAt"] == "u1"


# ---------------------------------------------------------------------------
# migrate_tier
# ---------------------------------------------------------------------------

def test_moves_only_records_at_or_past_cutoff(tmp_path):
    store = _store(tmp_path)
    cutoff = NOW - 7 * DAY
    store.upsert_many("hot", [
        _doc("old", cutoff - DAY),
        _doc("boundary", cutoff),
        _doc("young", cutoff + timedelta(seconds=1)),
    ])

    report = migrate_tier(store, "hot", "warm", cutoff, batch_size=1)

    assert _uids(store, "hot") == {"young"}
    assert _uids(store, "warm") == {"old", "boundary"}
    assert report["processed"] == 2
    assert report["succeeded"] == 2
    assert report["upserted"] == 2
    assert report["deleted"] == 2


def test_moved_document_keeps_first_seen_instant(tmp_path):
    clock = _Clock(NOW - 10 * DAY)
    store = _store(tmp_path, clock)
    store.upsert_many("hot", [_doc("a", NOW - 10 * DAY)])
    clock.now = NOW

    migrate_tier(store, "hot", "warm", NOW - 7 * DAY)

    moved = store.find_by_unique_id("warm", "a")
    assert moved["originalCreatedAt"] == format_ts(NOW - 10 * DAY)
    assert moved["createdAt"] == format_ts(NOW)


def test_rerun_after_crash_between_write_and_delete(tmp_path, monkeypatch):
    store = _store(tmp_path)
    cutoff = NOW - 7 * DAY
    store.upsert_many("hot", [_doc(f"u{i}", cutoff - DAY) for i in range(3)])

    real_delete = store.delete_by_unique_ids

    def _crash(tier, uids):
        raise StoreError("connection lost")

    monkeypatch.setattr(store, "delete_by_unique_ids", _crash)
    first = migrate_tier(store, "hot", "warm", cutoff)

    # Both tiers hold the records; nothing is lost.
    assert first["batch_errors"] == 1
    assert _uids(store, "hot") == {"u0", "u1", "u2"}
    assert _uids(store, "warm") == {"u0", "u1", "u2"}

    monkeypatch.setattr(store, "delete_by_unique_ids", real_delete)
    second = migrate_tier(store, "hot", "warm", cutoff)

    assert second["upserted"] == 0
    assert second["already_present"] == 3
    assert second["deleted"] == 3
    assert _uids(store, "hot") == set()
    assert store.count("warm") == 3


def test_partial_failure_deletes_only_confirmed(tmp_path, monkeypatch):
    store = _store(tmp_path)
    cutoff = NOW - 7 * DAY
    store.upsert_many("hot", [_doc(f"u{i}", cutoff - DAY) for i in range(3)])

    real_upsert = store.upsert_many

    def _flaky(tier, docs):
        if tier != "warm":
            return real_upsert(tier, docs)
        good = [d for d in docs if d["uniqueIdentifier"] != "u1"]
        real_upsert(tier, good)
        positions = [i for i, d in enumerate(docs) if d["uniqueIdentifier"] != "u1"]
        failed = [i for i, d in enumerate(docs) if d["uniqueIdentifier"] == "u1"]
        result = BulkWriteResult(upserted=positions,
                                 errors=[WriteError(i, "u1", "disk full") for i in failed])
        raise PartialBatchFailure(tier, result)

    monkeypatch.setattr(store, "upsert_many", _flaky)
    report = migrate_tier(store, "hot", "warm", cutoff)

    assert report["failed"] == 1
    assert report["succeeded"] == 2
    assert _uids(store, "hot") == {"u1"}
    assert _uids(store, "warm") == {"u0", "u2"}


def test_read_failure_stops_run_without_loss(tmp_path, monkeypatch):
    store = _store(tmp_path)
    store.upsert_many("hot", [_doc("a", NOW - 30 * DAY)])

    def _broken(*args, **kwargs):
        raise StoreError("cursor died")
        yield  # pragma: no cover

    monkeypatch.setattr(store, "stream_batches", _broken)
    report = migrate_tier(store, "hot", "warm", NOW - 7 * DAY)

    assert report["batch_errors"] == 1
    assert _uids(store, "hot") == {"a"}


def test_idempotent_on_repeat(tmp_path):
    store = _store(tmp_path)
    cutoff = NOW - 7 * DAY
    store.upsert_many("hot", [_doc("a", cutoff - DAY)])
    migrate_tier(store, "hot", "warm", cutoff)
    again = migrate_tier(store, "hot", "warm", cutoff)
    assert again["processed"] == 0
    assert store.count("warm") == 1


# ---------------------------------------------------------------------------
# run_rollover
# ---------------------------------------------------------------------------

def test_rollover_moves_very_old_hot_record_to_cold(tmp_path):
    store = _store(tmp_path)
    store.upsert_many("hot", [
        _doc("fresh", NOW - DAY),
        _doc("week", NOW - 10 * DAY),
        _doc("month", NOW - 30 * DAY),
    ])

    report = run_rollover(store, TierPolicy(), NOW)

    assert _uids(store, "hot") == {"fresh"}
    assert _uids(store, "warm") == {"week"}
    assert _uids(store, "cold") == {"month"}
    assert set(report["steps"]) == {"hot->warm", "warm->cold"}
    assert report["steps"]["warm->cold"]["succeeded"] == 1


def test_rollover_disabled_in_single_tier_mode(tmp_path):
    store = _store(tmp_path)
    store.upsert_many("hot", [_doc("month", NOW - 30 * DAY)])
    report = run_rollover(store, TierPolicy(tiering_enabled=False), NOW)
    assert report["processed"] == 0
    assert _uids(store, "hot") == {"month"}


@pytest.mark.parametrize("batch_size", [1, 2, 1000])
def test_no_record_lost_across_batch_sizes(tmp_path, batch_size):
    store = _store(tmp_path)
    docs = [_doc(f"u{i}", NOW - (8 + i) * DAY) for i in range(5)]
    store.upsert_many("hot", docs)

    run_rollover(store, TierPolicy(), NOW, batch_size=batch_size)

    everywhere = _uids(store, "hot") | _uids(store, "warm") | _uids(store, "cold")
    assert everywhere == {d["uniqueIdentifier"] for d in docs}
    assert sum(store.tier_counts().values()) == 5
