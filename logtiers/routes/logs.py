from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
import logging
import threading

from logtiers.schemas.api_contract import LogMetricsResponse, RangeQueryResponse
from logtiers.services.fanout import FanOut
from logtiers.services.settings import load_settings
from logtiers.services.tier_store import RecordFilter, TierStore
from logtiers.services.tiers import TierPolicy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/logs", tags=["logs"])

_fanout: Optional[FanOut] = None
_fanout_lock = threading.Lock()


def get_fanout() -> FanOut:
    """Process-wide FanOut over the configured store, opened on first use."""
    global _fanout
    with _fanout_lock:
        if _fanout is None:
            settings = load_settings()
            _fanout = FanOut(
                TierStore(settings.store.db_path),
                TierPolicy.from_settings(settings.tiers),
                max_workers=settings.fanout.max_workers,
                high_severity_level=settings.fanout.high_severity_level,
                default_range=settings.fanout.default_range,
            )
        return _fanout


@router.get("/", response_model=RangeQueryResponse)
def list_logs(
    range: Optional[str] = Query(None, description="Time window, e.g. 1h, 24h, 7d, 30d"),
    limit: int = Query(100, ge=1, le=1000),
    skip: int = Query(0, ge=0),
    min_level: Optional[int] = Query(None, ge=0),
    agent: Optional[str] = None,
    fanout: FanOut = Depends(get_fanout),
):
    flt = RecordFilter(min_level=min_level, agent_name=agent)
    try:
        result = fanout.query(range, flt, limit=limit, skip=skip)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "range": range or fanout.default_range,
        "tiers": result.tiers,
        "total": result.total,
        "limit": limit,
        "skip": skip,
        "logs": [record.to_document() for record in result.records],
        "levelDistribution": result.level_distribution,
        "failedTiers": result.failed_tiers,
    }


@router.get("/metrics", response_model=LogMetricsResponse)
def log_metrics(
    range: Optional[str] = Query(None, description="Optional time window; all data when omitted"),
    fanout: FanOut = Depends(get_fanout),
):
    try:
        result = fanout.metrics(range)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "totalLogs": result.total,
        "majorLogs": result.high_severity,
        "normalLogs": result.normal,
        "failedTiers": result.failed_tiers,
    }
