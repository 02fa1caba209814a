"""
logtiers/services/ingestion.py

Pulls a window of raw events from the upstream source, normalizes them and
writes them into the hot tier.

The cursor is explicit state: ``run_ingestion`` takes the current cursor and
returns the next one. It only moves forward once the store write attempt has
completed, so a failed fetch or a failed write replays the same window on the
next tick. Replays are harmless: every record is written insert-if-absent on
its uniqueIdentifier.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Tuple

from logtiers.schemas.record import TIERS, CanonicalRecord
from logtiers.services.cursor_store import CursorStore, IngestionCursor
from logtiers.services.errors import PartialBatchFailure, StoreError, TransientSourceError
from logtiers.services.normalization import normalize_events
from logtiers.services.settings import IngestionSettings
from logtiers.services.source import EventSource
from logtiers.services.tier_store import TierStore

logger = logging.getLogger(__name__)

INGEST_TIER = TIERS[0]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def fetch_window(
    cursor: IngestionCursor,
    now: datetime,
    overlap: timedelta,
    initial_lookback: timedelta,
) -> Tuple[datetime, datetime]:
    """[start, end] to request: from the last fetch (minus overlap) up to now."""
    start = cursor.last_fetched if cursor.last_fetched is not None else now - initial_lookback
    start = start - overlap
    if start > now:
        start = now - overlap
    return start, now


def _log_high_severity(records: List[CanonicalRecord], threshold: int) -> None:
    for record in records:
        if record.numeric_level >= threshold:
            logger.warning(
                f"High-level event: level={record.rule.level} agent={record.agent.name} "
                f"id={record.native_id or '-'} ts={record.timestamp.isoformat()} "
                f"description={record.rule.description!r}"
            )


def run_ingestion(
    source: EventSource,
    store: TierStore,
    cursor: IngestionCursor,
    now: datetime,
    settings: IngestionSettings,
) -> Tuple[IngestionCursor, Dict[str, int]]:
    """One ingestion tick. Returns (next cursor, report)."""
    report = {
        "processed": 0,
        "succeeded": 0,
        "failed": 0,
        "dropped": 0,
        "inserted": 0,
        "duplicates": 0,
        "aborted": 0,
    }
    start, end = fetch_window(
        cursor,
        now,
        overlap=timedelta(seconds=settings.overlap_seconds),
        initial_lookback=timedelta(seconds=settings.initial_lookback_seconds),
    )

    try:
        raw_events = source.fetch(start, end)
    except TransientSourceError as exc:
        logger.warning(f"Fetch for window {start.isoformat()} .. {end.isoformat()} failed; will retry: {exc}")
        report["aborted"] = 1
        return cursor, report

    report["processed"] = len(raw_events)
    records, dropped = normalize_events(raw_events)
    report["dropped"] = dropped
    report["failed"] += dropped

    _log_high_severity(records, settings.high_severity_level)

    docs = [record.to_document() for record in records]
    try:
        result = store.upsert_many(INGEST_TIER, docs)
    except PartialBatchFailure as exc:
        result = exc.result
        for err in result.errors:
            logger.error(f"Failed to store event {err.unique_identifier or '#' + str(err.index)}: {err.message}")
    except StoreError as exc:
        logger.error(f"Store write for window {start.isoformat()} .. {end.isoformat()} failed; will retry: {exc}")
        report["aborted"] = 1
        report["failed"] += len(docs)
        return cursor, report

    report["inserted"] = result.upserted_count
    report["duplicates"] = result.matched_count
    report["succeeded"] = len(result.confirmed)
    report["failed"] += len(result.errors)

    return cursor.advanced_to(end), report


class IngestionJob:
    """Binds the ingestion tick to its source, store and persisted cursor."""

    def __init__(
        self,
        source: EventSource,
        store: TierStore,
        cursor_store: CursorStore,
        settings: IngestionSettings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._source = source
        self._store = store
        self._cursor_store = cursor_store
        self._settings = settings
        self._clock = clock

    def run(self) -> Dict[str, int]:
        cursor = self._cursor_store.load()
        next_cursor, report = run_ingestion(
            self._source, self._store, cursor, self._clock(), self._settings
        )
        if next_cursor != cursor:
            self._cursor_store.save(next_cursor)
        return report
