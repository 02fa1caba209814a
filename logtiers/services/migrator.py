"""
logtiers/services/migrator.py

Moves aging records from one tier to the next.

Per batch: write to the target insert-if-absent on uniqueIdentifier, then delete
from the source only the documents the target confirmed (newly inserted or
already present). A crash between the two steps leaves a copy in both tiers;
the next run confirms it again and finishes the delete. Documents whose batch
failed stay in the source and are picked up by the next scheduled run.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List

from logtiers.schemas.record import BOOKKEEPING_FIELDS
from logtiers.services.errors import PartialBatchFailure, StoreError
from logtiers.services.tier_store import TierStore
from logtiers.services.tiers import TierPolicy

logger = logging.getLogger(__name__)

_LOG_EVERY = 10000


def prepare_for_target(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Strip store bookkeeping and keep the first-seen instants under new names.

    The target store stamps its own createdAt/updatedAt; the originals survive as
    originalCreatedAt/originalUpdatedAt. A document that already carries them
    (second hop) keeps the earliest ones.
    """
    out = {k: v for k, v in doc.items() if k not in BOOKKEEPING_FIELDS}
    if "originalCreatedAt" not in out and doc.get("createdAt") is not None:
        out["originalCreatedAt"] = doc["createdAt"]
    if "originalUpdatedAt" not in out and doc.get("updatedAt") is not None:
        out["originalUpdatedAt"] = doc["updatedAt"]
    return out


def _empty_report() -> Dict[str, int]:
    return {
        "processed": 0,
        "succeeded": 0,
        "failed": 0,
        "upserted": 0,
        "already_present": 0,
        "deleted": 0,
        "batch_errors": 0,
    }


def _process_batch(
    store: TierStore, source: str, target: str, batch: List[Dict[str, Any]], report: Dict[str, int]
) -> None:
    prepared = [prepare_for_target(doc) for doc in batch]

    try:
        result = store.upsert_many(target, prepared)
    except PartialBatchFailure as exc:
        result = exc.result
        for err in result.errors:
            logger.error(
                f"Failed to move {err.unique_identifier} from {source} to {target}: {err.message}"
            )

    report["upserted"] += result.upserted_count
    report["already_present"] += result.matched_count
    report["failed"] += len(result.errors)

    confirmed = [prepared[i]["uniqueIdentifier"] for i in result.confirmed]
    if confirmed:
        deleted = store.delete_by_unique_ids(source, confirmed)
        report["deleted"] += deleted
        report["succeeded"] += len(confirmed)


def migrate_tier(
    store: TierStore,
    source: str,
    target: str,
    cutoff: datetime,
    batch_size: int = 1000,
) -> Dict[str, int]:
    """Move every ``source`` record with timestamp <= cutoff into ``target``."""
    operation = f"{source} to {target}"
    report = _empty_report()
    logger.info(f"Starting to move records from {operation} (cutoff {cutoff.isoformat()})")

    batches = store.stream_batches(source, cutoff, batch_size)
    while True:
        try:
            batch = next(batches)
        except StopIteration:
            break
        except StoreError as exc:
            logger.error(f"Reading {source} failed during {operation}; stopping this run: {exc}")
            report["batch_errors"] += 1
            break

        report["processed"] += len(batch)
        try:
            _process_batch(store, source, target, batch, report)
        except StoreError as exc:
            report["batch_errors"] += 1
            logger.error(f"Batch of {len(batch)} failed during {operation}; left in {source}: {exc}")

        if report["processed"] % _LOG_EVERY < len(batch):
            logger.info(f"Processed {report['processed']} records from {operation}...")

    logger.info(
        f"Moved {report['succeeded']}/{report['processed']} records from {operation} "
        f"(new {report['upserted']}, already present {report['already_present']}, "
        f"failed {report['failed']}, batch errors {report['batch_errors']})"
    )
    return report


def run_rollover(
    store: TierStore, policy: TierPolicy, now: datetime, batch_size: int = 1000
) -> Dict[str, Any]:
    """Hot→warm then warm→cold, so a very old hot record can cross both in one run."""
    steps: Dict[str, Dict[str, int]] = {}
    totals = _empty_report()
    for source, target, cutoff in policy.rollover_steps(now):
        step = migrate_tier(store, source, target, cutoff, batch_size)
        steps[f"{source}->{target}"] = step
        for key in totals:
            totals[key] += step[key]
    return {**totals, "steps": steps}
