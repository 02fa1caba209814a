from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

from logtiers.services.errors import StoreError
from logtiers.services.mapping_loader import get_severity_levels
from logtiers.services.tier_store import TierStore

logger = logging.getLogger(__name__)


def normalize_levels(
    store: TierStore,
    tiers: Sequence[str],
    severity_levels: Optional[Dict[str, int]] = None,
) -> Dict[str, Any]:
    """Rewrite textual rule levels ("error", "Warning", ...) to numeric codes.

    Only rule.level changes. Records already numeric are never selected, so a
    second run finds nothing to do.
    """
    table = severity_levels if severity_levels is not None else get_severity_levels()
    report: Dict[str, Any] = {"processed": 0, "succeeded": 0, "failed": 0, "failed_tiers": []}

    for tier in tiers:
        try:
            docs = store.find_by_levels(tier, table.keys())
            by_code: Dict[str, List[int]] = defaultdict(list)
            for doc in docs:
                word = str((doc.get("rule") or {}).get("level", "")).lower()
                by_code[str(table.get(word, 0))].append(doc["_id"])

            for code, ids in by_code.items():
                updated = store.update_rule_level(tier, ids, code)
                report["succeeded"] += updated
            report["processed"] += len(docs)
            if docs:
                logger.info(f"Normalized {len(docs)} textual levels in {tier}")
        except StoreError as exc:
            logger.error(f"Level normalization failed on {tier}: {exc}")
            report["failed_tiers"].append(tier)
            report["failed"] += 1

    if report["processed"] == 0:
        logger.info("No records requiring level normalization found")
    return report
