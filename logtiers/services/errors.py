"""
logtiers/services/errors.py

Error taxonomy shared by ingestion, the tier store and the maintenance jobs.

Only FatalStoreError is allowed to escape a scheduled job; everything else is
contained at record or batch level by the caller.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class TieringError(Exception):
    """Base class for all errors raised by this package."""


class TransientSourceError(TieringError):
    """The upstream log source was unreachable, timed out or answered garbage."""


class MalformedRecordError(TieringError):
    """A raw event could not be normalized into a minimally valid record."""


class DuplicateKeyConflict(TieringError):
    """A write hit the uniqueIdentifier constraint; the record already exists."""

    def __init__(self, unique_identifier: str) -> None:
        super().__init__(f"duplicate uniqueIdentifier: {unique_identifier}")
        self.unique_identifier = unique_identifier


class StoreError(TieringError):
    """A store operation failed as a whole."""


class FatalStoreError(StoreError):
    """The persistent store cannot be opened. Maintenance must not start."""


@dataclass
class WriteError:
    index: int
    unique_identifier: Optional[str]
    message: str


@dataclass
class BulkWriteResult:
    """Outcome of an unordered bulk write, by position in the submitted batch."""

    upserted: List[int] = field(default_factory=list)
    matched: List[int] = field(default_factory=list)
    errors: List[WriteError] = field(default_factory=list)

    @property
    def confirmed(self) -> List[int]:
        """Positions now known to be present in the target."""
        return sorted(self.upserted + self.matched)

    @property
    def upserted_count(self) -> int:
        return len(self.upserted)

    @property
    def matched_count(self) -> int:
        return len(self.matched)


class PartialBatchFailure(TieringError):
    """Some items of an unordered bulk write failed for non-duplicate reasons.

    The successful items are committed. ``result`` tells the caller which ones.
    """

    def __init__(self, tier: str, result: BulkWriteResult) -> None:
        super().__init__(
            f"{len(result.errors)} write error(s) in bulk write to '{tier}' "
            f"({len(result.confirmed)} confirmed)"
        )
        self.tier = tier
        self.result = result
