"""
logtiers/services/fanout.py

Answers time-ranged reads across the tiers that can hold the requested window.

Counts and level distributions run one query per tier in parallel; a tier that
fails contributes zero and is reported in ``failed_tiers`` instead of failing
the whole request. Pages are assembled by a k-way merge on timestamp so a page
straddling a tier boundary (or a record caught mid-migration in two tiers) is
still globally ordered newest first.
"""
from __future__ import annotations

import heapq
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from logtiers.schemas.record import CanonicalRecord, parse_ts
from logtiers.services.tier_store import RecordFilter, TierStore
from logtiers.services.tiers import TierPolicy

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"^\s*(\d+)\s*([mhd])\s*$", re.IGNORECASE)
_RANGE_UNITS = {"m": "minutes", "h": "hours", "d": "days"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_range(value: Optional[str], default: str = "24h") -> timedelta:
    """'1h', '24h', '30d' ... -> timedelta. Raises ValueError on anything else."""
    text = value if value else default
    match = _RANGE_RE.match(text)
    if not match or int(match.group(1)) <= 0:
        raise ValueError(f"Invalid time range: {text!r} (expected e.g. '24h' or '30d')")
    amount = int(match.group(1))
    return timedelta(**{_RANGE_UNITS[match.group(2).lower()]: amount})


def select_tiers(window: timedelta, policy: TierPolicy) -> List[str]:
    """Tiers, newest first, whose [lower, upper) age range meets [0, window]."""
    return [tier for tier in policy.tiers if window >= policy.age_range(tier)[0]]


def _merge_key(doc: Dict[str, Any]) -> Tuple[str, str]:
    return str(doc.get("timestamp", "")), str(doc.get("uniqueIdentifier", ""))


def merge_newest_first(*runs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """k-way merge of runs already sorted newest first."""
    return list(heapq.merge(*runs, key=_merge_key, reverse=True))


def drop_repeats(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop a record seen twice in a merged run (one copy per tier mid-migration).

    Copies share the merge key, so they are always adjacent.
    """
    out: List[Dict[str, Any]] = []
    for doc in docs:
        if out and out[-1].get("uniqueIdentifier") == doc.get("uniqueIdentifier"):
            continue
        out.append(doc)
    return out


@dataclass
class CountResult:
    total: int
    per_tier: Dict[str, int]
    failed_tiers: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed_tiers)


@dataclass
class PageResult:
    records: List[CanonicalRecord]
    tiers: List[str]
    failed_tiers: List[str] = field(default_factory=list)


@dataclass
class RangeQueryResult:
    records: List[CanonicalRecord]
    total: int
    level_distribution: Dict[str, int]
    tiers: List[str]
    failed_tiers: List[str] = field(default_factory=list)


@dataclass
class LogMetrics:
    total: int
    high_severity: int
    failed_tiers: List[str] = field(default_factory=list)

    @property
    def normal(self) -> int:
        return self.total - self.high_severity


class FanOut:
    def __init__(
        self,
        store: TierStore,
        policy: TierPolicy,
        clock: Callable[[], datetime] = _utcnow,
        max_workers: int = 3,
        high_severity_level: int = 12,
        default_range: str = "24h",
    ) -> None:
        self._store = store
        self._policy = policy
        self._clock = clock
        self._max_workers = max_workers
        self._high_severity_level = high_severity_level
        self._default_range = default_range

    @property
    def default_range(self) -> str:
        return self._default_range

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def resolve(
        self, range_key: Optional[str], flt: Optional[RecordFilter] = None
    ) -> Tuple[List[str], RecordFilter]:
        """Tiers to query and the filter with the window's lower bound applied."""
        window = parse_range(range_key, self._default_range)
        flt = flt or RecordFilter()
        since = self._clock() - window
        if flt.since is None or flt.since < since:
            flt = RecordFilter(
                since=since,
                until=flt.until,
                min_level=flt.min_level,
                agent_name=flt.agent_name,
            )
        return select_tiers(window, self._policy), flt

    def _parallel(
        self, tiers: List[str], func: Callable[[str], Any]
    ) -> Tuple[Dict[str, Any], List[str]]:
        results: Dict[str, Any] = {}
        failed: List[str] = []
        if not tiers:
            return results, failed
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(tiers))) as executor:
            futures = [(tier, executor.submit(func, tier)) for tier in tiers]
            for tier, future in futures:
                try:
                    results[tier] = future.result()
                except Exception as exc:
                    # Same contract as a settled-all fan-out: the tier counts as
                    # empty and the caller sees it in failed_tiers.
                    logger.error(f"Query on tier {tier} failed: {exc}")
                    failed.append(tier)
        return results, failed

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def count(self, range_key: Optional[str], flt: Optional[RecordFilter] = None) -> CountResult:
        tiers, flt = self.resolve(range_key, flt)
        return self.count_tiers(tiers, flt)

    def count_tiers(self, tiers: List[str], flt: RecordFilter) -> CountResult:
        results, failed = self._parallel(tiers, lambda tier: self._store.count(tier, flt))
        per_tier = {tier: int(results.get(tier, 0)) for tier in tiers}
        return CountResult(total=sum(per_tier.values()), per_tier=per_tier, failed_tiers=failed)

    def level_distribution(
        self, range_key: Optional[str], flt: Optional[RecordFilter] = None
    ) -> Tuple[Dict[str, int], List[str]]:
        tiers, flt = self.resolve(range_key, flt)
        results, failed = self._parallel(tiers, lambda tier: self._store.level_distribution(tier, flt))
        merged: Dict[str, int] = {}
        for tier in tiers:
            for level, count in (results.get(tier) or {}).items():
                merged[level] = merged.get(level, 0) + count
        return dict(sorted(merged.items(), key=lambda item: _level_sort_key(item[0]))), failed

    def page(
        self,
        range_key: Optional[str],
        flt: Optional[RecordFilter] = None,
        limit: int = 100,
        skip: int = 0,
    ) -> PageResult:
        """Newest-first page across tiers.

        Tiers are visited newest to oldest, each asked for skip+limit records.
        Once the merged candidates fill the page, an older tier is only asked
        for records at or above the oldest candidate's timestamp.
        """
        tiers, flt = self.resolve(range_key, flt)
        need = max(skip, 0) + max(limit, 0)
        candidates: List[Dict[str, Any]] = []
        failed: List[str] = []
        if need == 0:
            return PageResult(records=[], tiers=tiers)

        for tier in tiers:
            floor = parse_ts(candidates[need - 1]["timestamp"]) if len(candidates) >= need else None
            try:
                docs = self._store.find(tier, flt, limit=need, not_older_than=floor)
            except Exception as exc:
                logger.error(f"Page query on tier {tier} failed: {exc}")
                failed.append(tier)
                continue
            candidates = drop_repeats(merge_newest_first(candidates, docs))[:need]

        window = candidates[skip:need]
        return PageResult(
            records=[CanonicalRecord.from_document(doc) for doc in window],
            tiers=tiers,
            failed_tiers=failed,
        )

    def query(
        self,
        range_key: Optional[str],
        flt: Optional[RecordFilter] = None,
        limit: int = 100,
        skip: int = 0,
    ) -> RangeQueryResult:
        page = self.page(range_key, flt, limit=limit, skip=skip)
        counts = self.count(range_key, flt)
        distribution, dist_failed = self.level_distribution(range_key, flt)
        failed = sorted(
            set(page.failed_tiers) | set(counts.failed_tiers) | set(dist_failed),
            key=page.tiers.index,
        )
        return RangeQueryResult(
            records=page.records,
            total=counts.total,
            level_distribution=distribution,
            tiers=page.tiers,
            failed_tiers=failed,
        )

    def metrics(self, range_key: Optional[str] = None) -> LogMetrics:
        """Total and high-severity counts; no range means every tier, all time."""
        if range_key:
            tiers, flt = self.resolve(range_key)
        else:
            tiers, flt = self._policy.tiers, RecordFilter()
        total = self.count_tiers(tiers, flt)
        high_flt = RecordFilter(
            since=flt.since, until=flt.until, min_level=self._high_severity_level
        )
        high = self.count_tiers(tiers, high_flt)
        failed = sorted(set(total.failed_tiers) | set(high.failed_tiers), key=tiers.index)
        return LogMetrics(total=total.total, high_severity=high.total, failed_tiers=failed)


def _level_sort_key(level: str) -> Tuple[int, str]:
    try:
        return int(level), level
    except ValueError:
        return -1, level
