from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _ContractModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class AgentOut(_ContractModel):
    name: str
    id: Optional[str] = None
    ip: Optional[str] = None


class RuleOut(_ContractModel):
    level: str
    description: str
    groups: List[str] = Field(default_factory=list)


class NetworkOut(_ContractModel):
    srcIp: Optional[str] = None
    destIp: Optional[str] = None
    protocol: Optional[str] = None


class LogRecordOut(_ContractModel):
    timestamp: str
    agent: AgentOut
    rule: RuleOut
    network: NetworkOut
    uniqueIdentifier: str
    nativeId: Optional[str] = None
    location: Optional[str] = None
    rawLog: Any = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    originalCreatedAt: Optional[str] = None
    originalUpdatedAt: Optional[str] = None


class RangeQueryResponse(_ContractModel):
    range: str
    tiers: List[str]
    total: int
    limit: int
    skip: int
    logs: List[LogRecordOut]
    levelDistribution: Dict[str, int]
    failedTiers: List[str]


class LogMetricsResponse(_ContractModel):
    totalLogs: int
    majorLogs: int
    normalLogs: int
    failedTiers: List[str]


class JobCounters(_ContractModel):
    runs: int
    processed: int
    succeeded: int
    failed: int


class MetricsResponse(_ContractModel):
    records_ingested_total: int
    records_dropped_total: int
    records_migrated_total: int
    records_deduplicated_total: int
    records_expired_total: int
    levels_normalized_total: int
    jobs: Dict[str, JobCounters]
