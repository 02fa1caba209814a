from __future__ import annotations

import logging
import os
import socket
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from logtiers.services.tier_store import TierStore

logger = logging.getLogger(__name__)

LEASE_NAME = "maintenance"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LeaderLease:
    """Time-bounded lease in the shared store; one holder at a time.

    Renewing before expiry keeps leadership. A holder that stops renewing
    loses it once ``ttl`` has passed.
    """

    def __init__(
        self,
        store: TierStore,
        ttl: timedelta,
        holder: Optional[str] = None,
        name: str = LEASE_NAME,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._ttl = ttl
        self._name = name
        self._clock = clock
        self.holder = holder or default_holder_id()
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def acquire(self) -> bool:
        now = self._clock()
        acquired = self._store.acquire_lease(self._name, self.holder, now, now + self._ttl)
        if acquired != self._is_leader:
            if acquired:
                logger.info(f"{self.holder} acquired lease '{self._name}'")
            else:
                logger.warning(f"{self.holder} lost lease '{self._name}'")
        self._is_leader = acquired
        return acquired

    def release(self) -> None:
        self._store.release_lease(self._name, self.holder)
        if self._is_leader:
            logger.info(f"{self.holder} released lease '{self._name}'")
        self._is_leader = False
