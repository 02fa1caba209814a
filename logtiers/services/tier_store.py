"""
logtiers/services/tier_store.py

SQLite-backed storage for the hot/warm/cold tiers.

Each tier is one table. The canonical document is kept as JSON next to a few
extracted columns that the indexes and range queries work on. ``_id`` grows
monotonically per table, so it doubles as the arrival order inside a tier.

Bulk writes are unordered: every item is attempted, a failing item never stops
the rest of the batch, and the batch is committed once all items were tried.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from logtiers.schemas.record import TIERS, format_ts, parse_ts
from logtiers.services.errors import (
    BulkWriteResult,
    DuplicateKeyConflict,
    FatalStoreError,
    PartialBatchFailure,
    StoreError,
    WriteError,
)

logger = logging.getLogger(__name__)

# SQLite caps bound parameters per statement; stay well below the default.
_DELETE_CHUNK = 500

_INDEXABLE_COLUMNS = {"timestamp", "rule_level", "agent_name", "unique_identifier", "native_id"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RecordFilter:
    """Range and attribute filter understood by every tier."""

    since: Optional[datetime] = None
    until: Optional[datetime] = None
    min_level: Optional[int] = None
    agent_name: Optional[str] = None

    def where(self) -> Tuple[List[str], List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if self.since is not None:
            clauses.append("timestamp >= ?")
            params.append(format_ts(self.since))
        if self.until is not None:
            clauses.append("timestamp <= ?")
            params.append(format_ts(self.until))
        if self.min_level is not None:
            clauses.append("CAST(rule_level AS INTEGER) >= ?")
            params.append(int(self.min_level))
        if self.agent_name:
            clauses.append("agent_name = ?")
            params.append(self.agent_name)
        return clauses, params


def _table(tier: str) -> str:
    if tier not in TIERS:
        raise ValueError(f"Unknown tier: {tier!r}")
    return tier


def _where_sql(clauses: Sequence[str]) -> str:
    return f" WHERE {' AND '.join(clauses)}" if clauses else ""


class TierStore:
    def __init__(self, db_path: str, clock: Callable[[], datetime] = _utcnow) -> None:
        self._db_path = db_path
        self._clock = clock
        self._lock = threading.RLock()
        try:
            if db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(db_path, check_same_thread=False, timeout=15)
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._init_schema()
        except (sqlite3.Error, OSError) as exc:
            raise FatalStoreError(f"Cannot open tier store at {db_path}: {exc}") from exc
        logger.info(f"Tier store opened at {db_path}")

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        with self._lock:
            for tier in TIERS:
                # uniqueIdentifier uniqueness is an index owned by the index
                # manager, not a table constraint.
                self._conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {tier} (
                        _id INTEGER PRIMARY KEY AUTOINCREMENT,
                        unique_identifier TEXT NOT NULL,
                        native_id TEXT,
                        timestamp TEXT NOT NULL,
                        rule_level TEXT NOT NULL,
                        agent_name TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        doc TEXT NOT NULL
                    )
                    """
                )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS leases (
                    name TEXT PRIMARY KEY,
                    holder TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
                """
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StoreError(f"{exc} [{sql.strip().splitlines()[0]}]") from exc

    def _commit(self) -> None:
        try:
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"commit failed: {exc}") from exc

    def _rollback_quietly(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error as exc:
            logger.warning(f"Rollback failed on {self._db_path}: {exc}")

    @staticmethod
    def _load_doc(row: Tuple[int, str]) -> Dict[str, Any]:
        doc = json.loads(row[1])
        doc["_id"] = row[0]
        return doc

    @staticmethod
    def _row_values(doc: Dict[str, Any], now_text: str) -> Tuple[Any, ...]:
        unique_identifier = doc.get("uniqueIdentifier")
        if not isinstance(unique_identifier, str) or not unique_identifier:
            raise ValueError("document has no uniqueIdentifier")
        ts = parse_ts(doc.get("timestamp"))
        if ts is None:
            raise ValueError(f"document {unique_identifier} has no valid timestamp")

        rule = doc.get("rule") or {}
        agent = doc.get("agent") or {}
        native_id = doc.get("nativeId")

        stored = {k: v for k, v in doc.items() if k != "_id"}
        stored["timestamp"] = format_ts(ts)
        stored["createdAt"] = now_text
        stored["updatedAt"] = now_text

        return (
            unique_identifier,
            str(native_id) if native_id not in (None, "") else None,
            format_ts(ts),
            str(rule.get("level") or "0"),
            str(agent.get("name") or "unknown"),
            now_text,
            json.dumps(stored, sort_keys=True),
        )

    def _insert_if_absent(self, table: str, doc: Dict[str, Any], now_text: str) -> bool:
        values = self._row_values(doc, now_text)
        try:
            cur = self._conn.execute(
                f"""
                INSERT INTO {table}
                    (unique_identifier, native_id, timestamp, rule_level, agent_name, created_at, doc)
                SELECT ?, ?, ?, ?, ?, ?, ?
                WHERE NOT EXISTS (SELECT 1 FROM {table} WHERE unique_identifier = ?)
                """,
                (*values, values[0]),
            )
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc).upper():
                raise DuplicateKeyConflict(values[0]) from exc
            raise
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_many(self, tier: str, docs: Sequence[Dict[str, Any]]) -> BulkWriteResult:
        """Plain unordered insert. A uniqueness violation is a per-item error."""
        table = _table(tier)
        result = BulkWriteResult()
        if not docs:
            return result

        now_text = format_ts(self._clock())
        with self._lock:
            for index, doc in enumerate(docs):
                unique_identifier = doc.get("uniqueIdentifier") if isinstance(doc, dict) else None
                try:
                    self._conn.execute(
                        f"""
                        INSERT INTO {table}
                            (unique_identifier, native_id, timestamp, rule_level, agent_name, created_at, doc)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        self._row_values(doc, now_text),
                    )
                except (sqlite3.Error, ValueError, TypeError, AttributeError) as exc:
                    result.errors.append(WriteError(index, unique_identifier, str(exc)))
                    continue
                result.upserted.append(index)
            try:
                self._commit()
            except StoreError:
                self._rollback_quietly()
                raise

        if result.errors:
            raise PartialBatchFailure(tier, result)
        return result

    def upsert_many(self, tier: str, docs: Sequence[Dict[str, Any]]) -> BulkWriteResult:
        """Insert each document unless its uniqueIdentifier is already present.

        Unordered. Documents already present (or rejected by the uniqueness
        index) are reported as matched. Any other per-item failure is collected
        and, after the successful items are committed, raised as
        PartialBatchFailure carrying the full result.
        """
        table = _table(tier)
        result = BulkWriteResult()
        if not docs:
            return result

        now_text = format_ts(self._clock())
        with self._lock:
            for index, doc in enumerate(docs):
                unique_identifier = doc.get("uniqueIdentifier") if isinstance(doc, dict) else None
                try:
                    inserted = self._insert_if_absent(table, doc, now_text)
                except DuplicateKeyConflict:
                    result.matched.append(index)
                    continue
                except (sqlite3.Error, ValueError, TypeError, AttributeError) as exc:
                    result.errors.append(WriteError(index, unique_identifier, str(exc)))
                    continue
                if inserted:
                    result.upserted.append(index)
                else:
                    result.matched.append(index)
            try:
                self._commit()
            except StoreError:
                self._rollback_quietly()
                raise

        if result.errors:
            raise PartialBatchFailure(tier, result)
        return result

    def delete_by_unique_ids(self, tier: str, unique_identifiers: Iterable[str]) -> int:
        return self._delete_in_chunks(tier, "unique_identifier", list(unique_identifiers))

    def delete_by_ids(self, tier: str, ids: Iterable[int]) -> int:
        return self._delete_in_chunks(tier, "_id", list(ids))

    def _delete_in_chunks(self, tier: str, column: str, values: List[Any]) -> int:
        table = _table(tier)
        if not values:
            return 0
        deleted = 0
        with self._lock:
            try:
                for start in range(0, len(values), _DELETE_CHUNK):
                    chunk = values[start:start + _DELETE_CHUNK]
                    placeholders = ",".join("?" for _ in chunk)
                    cur = self._execute(
                        f"DELETE FROM {table} WHERE {column} IN ({placeholders})", chunk
                    )
                    deleted += cur.rowcount
                self._commit()
            except StoreError:
                self._rollback_quietly()
                raise
        return deleted

    def delete_older_than(self, tier: str, cutoff: datetime) -> int:
        """Delete every record with timestamp <= cutoff."""
        table = _table(tier)
        with self._lock:
            try:
                cur = self._execute(
                    f"DELETE FROM {table} WHERE timestamp <= ?", (format_ts(cutoff),)
                )
                self._commit()
            except StoreError:
                self._rollback_quietly()
                raise
        return cur.rowcount

    def update_rule_level(self, tier: str, ids: Iterable[int], level: str) -> int:
        """Rewrite rule.level on the given records; nothing else is touched."""
        table = _table(tier)
        now_text = format_ts(self._clock())
        updated = 0
        with self._lock:
            try:
                for record_id in ids:
                    row = self._execute(
                        f"SELECT _id, doc FROM {table} WHERE _id = ?", (record_id,)
                    ).fetchone()
                    if row is None:
                        continue
                    doc = json.loads(row[1])
                    doc.setdefault("rule", {})["level"] = level
                    doc["updatedAt"] = now_text
                    cur = self._execute(
                        f"UPDATE {table} SET rule_level = ?, doc = ? WHERE _id = ?",
                        (level, json.dumps(doc, sort_keys=True), record_id),
                    )
                    updated += cur.rowcount
                self._commit()
            except StoreError:
                self._rollback_quietly()
                raise
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def stream_batches(
        self, tier: str, cutoff: datetime, batch_size: int
    ) -> Iterator[List[Dict[str, Any]]]:
        """Yield batches of records with timestamp <= cutoff, oldest store id first.

        Keyset paging on ``_id`` keeps memory bounded and stays valid while the
        caller deletes the rows it has already handled.
        """
        table = _table(tier)
        cutoff_text = format_ts(cutoff)
        last_id = 0
        while True:
            with self._lock:
                rows = self._execute(
                    f"""
                    SELECT _id, doc FROM {table}
                    WHERE timestamp <= ? AND _id > ?
                    ORDER BY _id
                    LIMIT ?
                    """,
                    (cutoff_text, last_id, batch_size),
                ).fetchall()
            if not rows:
                return
            last_id = rows[-1][0]
            yield [self._load_doc(row) for row in rows]
            if len(rows) < batch_size:
                return

    def count(self, tier: str, flt: Optional[RecordFilter] = None) -> int:
        table = _table(tier)
        clauses, params = (flt or RecordFilter()).where()
        with self._lock:
            row = self._execute(
                f"SELECT COUNT(*) FROM {table}{_where_sql(clauses)}", params
            ).fetchone()
        return int(row[0])

    def find(
        self,
        tier: str,
        flt: Optional[RecordFilter] = None,
        limit: int = 100,
        not_older_than: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Newest first; ties broken by uniqueIdentifier, descending."""
        table = _table(tier)
        clauses, params = (flt or RecordFilter()).where()
        if not_older_than is not None:
            clauses.append("timestamp >= ?")
            params.append(format_ts(not_older_than))
        with self._lock:
            rows = self._execute(
                f"""
                SELECT _id, doc FROM {table}{_where_sql(clauses)}
                ORDER BY timestamp DESC, unique_identifier DESC
                LIMIT ?
                """,
                (*params, limit),
            ).fetchall()
        return [self._load_doc(row) for row in rows]

    def level_distribution(self, tier: str, flt: Optional[RecordFilter] = None) -> Dict[str, int]:
        table = _table(tier)
        clauses, params = (flt or RecordFilter()).where()
        with self._lock:
            rows = self._execute(
                f"SELECT rule_level, COUNT(*) FROM {table}{_where_sql(clauses)} GROUP BY rule_level",
                params,
            ).fetchall()
        return {str(level): int(count) for level, count in rows}

    def duplicate_native_ids(self, tier: str) -> List[str]:
        table = _table(tier)
        with self._lock:
            rows = self._execute(
                f"""
                SELECT native_id FROM {table}
                WHERE native_id IS NOT NULL
                GROUP BY native_id
                HAVING COUNT(*) > 1
                ORDER BY native_id
                """
            ).fetchall()
        return [row[0] for row in rows]

    def find_by_native_id(self, tier: str, native_id: str) -> List[Dict[str, Any]]:
        table = _table(tier)
        with self._lock:
            rows = self._execute(
                f"SELECT _id, doc FROM {table} WHERE native_id = ? ORDER BY _id", (native_id,)
            ).fetchall()
        return [self._load_doc(row) for row in rows]

    def find_by_unique_id(self, tier: str, unique_identifier: str) -> Optional[Dict[str, Any]]:
        table = _table(tier)
        with self._lock:
            row = self._execute(
                f"SELECT _id, doc FROM {table} WHERE unique_identifier = ? ORDER BY _id LIMIT 1",
                (unique_identifier,),
            ).fetchone()
        return self._load_doc(row) if row else None

    def find_by_levels(self, tier: str, levels: Iterable[str]) -> List[Dict[str, Any]]:
        """Records whose rule.level matches one of ``levels``, case-insensitively."""
        table = _table(tier)
        wanted = sorted({str(level).lower() for level in levels})
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        with self._lock:
            rows = self._execute(
                f"SELECT _id, doc FROM {table} WHERE lower(rule_level) IN ({placeholders}) ORDER BY _id",
                wanted,
            ).fetchall()
        return [self._load_doc(row) for row in rows]

    def tier_counts(self) -> Dict[str, int]:
        return {tier: self.count(tier) for tier in TIERS}

    # ------------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------------

    def create_index(
        self,
        tier: str,
        name: str,
        columns: Sequence[Tuple[str, str]],
        unique: bool = False,
    ) -> None:
        """CREATE INDEX IF NOT EXISTS; ``columns`` is a list of (column, ASC|DESC)."""
        table = _table(tier)
        parts = []
        for column, direction in columns:
            if column not in _INDEXABLE_COLUMNS or direction.upper() not in ("ASC", "DESC"):
                raise ValueError(f"Cannot index {column} {direction}")
            parts.append(f"{column} {direction.upper()}")
        kind = "UNIQUE INDEX" if unique else "INDEX"
        with self._lock:
            self._execute(
                f"CREATE {kind} IF NOT EXISTS {table}_{name} ON {table} ({', '.join(parts)})"
            )
            self._commit()

    def index_names(self, tier: str) -> List[str]:
        table = _table(tier)
        with self._lock:
            rows = self._execute(f"PRAGMA index_list({table})").fetchall()
        # Row layout: seq, name, unique, origin, partial.
        return sorted(row[1] for row in rows if not str(row[1]).startswith("sqlite_autoindex"))

    def unique_index_names(self, tier: str) -> List[str]:
        table = _table(tier)
        with self._lock:
            rows = self._execute(f"PRAGMA index_list({table})").fetchall()
        return sorted(row[1] for row in rows if row[2] and not str(row[1]).startswith("sqlite_autoindex"))

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    def acquire_lease(self, name: str, holder: str, now: datetime, expires_at: datetime) -> bool:
        """Take or renew a named lease. Returns False while someone else holds it."""
        now_text = format_ts(now)
        with self._lock:
            try:
                if self._conn.in_transaction:
                    self._commit()
                self._execute("BEGIN IMMEDIATE")
                row = self._execute(
                    "SELECT holder, expires_at FROM leases WHERE name = ?", (name,)
                ).fetchone()
                acquired = row is None or row[0] == holder or row[1] <= now_text
                if acquired:
                    self._execute(
                        """
                        INSERT INTO leases (name, holder, expires_at) VALUES (?, ?, ?)
                        ON CONFLICT(name) DO UPDATE SET
                            holder = excluded.holder,
                            expires_at = excluded.expires_at
                        """,
                        (name, holder, format_ts(expires_at)),
                    )
                self._commit()
            except StoreError:
                self._rollback_quietly()
                raise
        return acquired

    def release_lease(self, name: str, holder: str) -> None:
        with self._lock:
            try:
                self._execute("DELETE FROM leases WHERE name = ? AND holder = ?", (name, holder))
                self._commit()
            except StoreError:
                self._rollback_quietly()
                raise
