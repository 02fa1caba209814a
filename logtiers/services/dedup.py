from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence, Tuple

from logtiers.services.errors import StoreError
from logtiers.services.tier_store import TierStore

logger = logging.getLogger(__name__)


def arrival_key(doc: Dict[str, Any]) -> Tuple[str, int]:
    """Sort key for "who arrived first" inside one tier.

    The instant the record first entered any tier (originalCreatedAt survives
    migration, createdAt is the current tier's stamp), then the tier's own
    insertion sequence. Timestamps are fixed-width UTC text and compare in
    time order.
    """
    first_seen = doc.get("originalCreatedAt") or doc.get("createdAt") or ""
    return str(first_seen), int(doc.get("_id") or 0)


def dedup_tier(store: TierStore, tier: str) -> Dict[str, int]:
    """Keep the earliest-arrived record per nativeId, delete the rest.

    Records without a nativeId are ignored. Running it again on clean data
    finds no groups and deletes nothing.
    """
    report = {"processed": 0, "succeeded": 0, "failed": 0, "groups": 0, "removed": 0}

    for native_id in store.duplicate_native_ids(tier):
        members = store.find_by_native_id(tier, native_id)
        if len(members) < 2:
            continue
        report["groups"] += 1
        report["processed"] += len(members)

        members.sort(key=arrival_key)
        keep, redundant = members[0], members[1:]
        removed = store.delete_by_ids(tier, [doc["_id"] for doc in redundant])

        report["removed"] += removed
        report["succeeded"] += len(members)
        logger.info(
            f"Removed {removed} duplicates in {tier} for nativeId={native_id}, "
            f"kept {keep.get('uniqueIdentifier')}"
        )

    return report


def dedup_all(store: TierStore, tiers: Sequence[str]) -> Dict[str, Any]:
    """Run dedup_tier on each tier; a failing tier does not stop the others."""
    totals = {"processed": 0, "succeeded": 0, "failed": 0, "groups": 0, "removed": 0}
    per_tier: Dict[str, Dict[str, int]] = {}
    failed_tiers: List[str] = []

    for tier in tiers:
        try:
            report = dedup_tier(store, tier)
        except StoreError as exc:
            logger.error(f"Duplicate cleanup failed on {tier}: {exc}")
            failed_tiers.append(tier)
            totals["failed"] += 1
            continue
        per_tier[tier] = report
        for key in totals:
            totals[key] += report[key]

    logger.info(f"Duplicate cleanup completed. Removed {totals['removed']} duplicate records")
    return {**totals, "tiers": per_tier, "failed_tiers": failed_tiers}
