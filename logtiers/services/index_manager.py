from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Tuple

from logtiers.services.errors import StoreError
from logtiers.services.tier_store import TierStore

logger = logging.getLogger(__name__)

# name -> (columns, unique)
REQUIRED_INDEXES: Dict[str, Tuple[List[Tuple[str, str]], bool]] = {
    "timestamp_desc": ([("timestamp", "DESC")], False),
    "rule_level": ([("rule_level", "ASC")], False),
    "timestamp_rule_level": ([("timestamp", "DESC"), ("rule_level", "ASC")], False),
    "agent_name": ([("agent_name", "ASC")], False),
    "unique_identifier": ([("unique_identifier", "ASC")], True),
}


def ensure_indexes(store: TierStore, tiers: Sequence[str]) -> Dict[str, List[str]]:
    """Create every required index on every tier. Safe to call on each startup.

    A failed index is logged and reported, never raised: the service keeps
    running with slower queries. The uniqueness index fails, for instance,
    while a tier still holds duplicate uniqueIdentifiers.

    Returns {"created": [...], "failed": [...]} as "<tier>.<index>" names.
    """
    created: List[str] = []
    failed: List[str] = []

    for tier in tiers:
        for name, (columns, unique) in REQUIRED_INDEXES.items():
            label = f"{tier}.{name}"
            try:
                store.create_index(tier, name, columns, unique=unique)
                created.append(label)
            except (StoreError, ValueError) as exc:
                logger.error(f"Failed to ensure index {label}: {exc}")
                failed.append(label)

    if failed:
        logger.warning(f"Indexes ensured with {len(failed)} failure(s): {', '.join(failed)}")
    else:
        logger.info(f"Indexes ensured on tiers: {', '.join(tiers)}")
    return {"created": created, "failed": failed}


def missing_indexes(store: TierStore, tiers: Sequence[str]) -> List[str]:
    missing: List[str] = []
    for tier in tiers:
        present = set(store.index_names(tier))
        for name in REQUIRED_INDEXES:
            if f"{tier}_{name}" not in present:
                missing.append(f"{tier}.{name}")
    return missing
