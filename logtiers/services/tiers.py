from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from logtiers.schemas.record import TIERS
from logtiers.services.settings import TierSettings


@dataclass(frozen=True)
class TierPolicy:
    """Age thresholds that decide tier membership.

    A record whose age equals a threshold belongs to the older side:
    age == hot_max_age is warm, age == retention is expired.
    """

    hot_max_age: timedelta = timedelta(days=7)
    warm_max_age: timedelta = timedelta(days=21)
    retention: timedelta = timedelta(days=90)
    fallback_retention: timedelta = timedelta(days=7)
    tiering_enabled: bool = True

    @classmethod
    def from_settings(cls, settings: TierSettings) -> "TierPolicy":
        return cls(
            hot_max_age=timedelta(days=settings.hot_days),
            warm_max_age=timedelta(days=settings.warm_days),
            retention=timedelta(days=settings.retention_days),
            fallback_retention=timedelta(days=settings.fallback_retention_days),
            tiering_enabled=settings.tiering_enabled,
        )

    @property
    def tiers(self) -> List[str]:
        return list(TIERS) if self.tiering_enabled else [TIERS[0]]

    @property
    def terminal_tier(self) -> str:
        return self.tiers[-1]

    @property
    def terminal_horizon(self) -> timedelta:
        return self.retention if self.tiering_enabled else self.fallback_retention

    def age_range(self, tier: str) -> Tuple[timedelta, timedelta]:
        """Half-open [lower, upper) age interval a tier is responsible for."""
        if not self.tiering_enabled:
            return timedelta(0), self.fallback_retention
        bounds = {
            "hot": (timedelta(0), self.hot_max_age),
            "warm": (self.hot_max_age, self.warm_max_age),
            "cold": (self.warm_max_age, self.retention),
        }
        return bounds[tier]

    def tier_for_age(self, age: timedelta) -> Optional[str]:
        """Tier a record of this age belongs to, or None once expired."""
        for tier in self.tiers:
            lower, upper = self.age_range(tier)
            if lower <= age < upper:
                return tier
        if age < timedelta(0):
            return self.tiers[0]
        return None

    def rollover_steps(self, now: datetime) -> List[Tuple[str, str, datetime]]:
        """(source, target, cutoff) pairs; records with timestamp <= cutoff move."""
        if not self.tiering_enabled:
            return []
        return [
            ("hot", "warm", now - self.hot_max_age),
            ("warm", "cold", now - self.warm_max_age),
        ]

    def expiry_cutoff(self, now: datetime) -> datetime:
        return now - self.terminal_horizon
