from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict

from logtiers.services.tier_store import TierStore
from logtiers.services.tiers import TierPolicy

logger = logging.getLogger(__name__)


def reap_expired(store: TierStore, policy: TierPolicy, now: datetime) -> Dict[str, Any]:
    """Permanently delete terminal-tier records at or beyond the retention horizon.

    With tiering enabled that is cold after 90 days; in single-tier fallback
    mode it is the only (hot) store after 7 days.
    """
    tier = policy.terminal_tier
    cutoff = policy.expiry_cutoff(now)
    deleted = store.delete_older_than(tier, cutoff)
    logger.info(
        f"Deleted {deleted} records from {tier} older than "
        f"{policy.terminal_horizon.days} days (cutoff {cutoff.isoformat()})"
    )
    return {
        "processed": deleted,
        "succeeded": deleted,
        "failed": 0,
        "deleted": deleted,
        "tier": tier,
        "cutoff": cutoff.isoformat(),
    }
