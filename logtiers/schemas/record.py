from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Tier names, newest first. Records only ever move rightwards.
TIERS = ["hot", "warm", "cold"]

# Fields the store adds to every document it holds. They are stripped or renamed
# when a document changes tier.
BOOKKEEPING_FIELDS = ["_id", "createdAt", "updatedAt"]


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_ts(value: datetime) -> str:
    """Fixed-width UTC text; sorts lexicographically in time order."""
    return to_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def format_ts_millis(value: datetime) -> str:
    dt = to_utc(value)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_ts(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return to_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    s = value.strip()
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        return to_utc(datetime.fromisoformat(s))
    except ValueError:
        return None


class _RecordModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Agent(_RecordModel):
    name: str = "unknown"
    id: Optional[str] = None
    ip: Optional[str] = None


class Rule(_RecordModel):
    level: str = "0"
    description: str = "No description"
    groups: List[str] = Field(default_factory=list)

    @field_validator("level")
    @classmethod
    def _level_is_numeric_text(cls, value: str) -> str:
        # Severity words are tolerated here so pre-normalization documents still
        # load; the level normalization pass rewrites them.
        if not isinstance(value, str) or not value.strip():
            return "0"
        return value.strip()


class Network(_RecordModel):
    src_ip: Optional[str] = Field(default=None, alias="srcIp")
    dest_ip: Optional[str] = Field(default=None, alias="destIp")
    protocol: Optional[str] = None


class CanonicalRecord(_RecordModel):
    timestamp: datetime
    agent: Agent = Field(default_factory=Agent)
    rule: Rule = Field(default_factory=Rule)
    network: Network = Field(default_factory=Network)
    raw_log: Any = Field(default=None, alias="rawLog")
    native_id: Optional[str] = Field(default=None, alias="nativeId")
    unique_identifier: str = Field(alias="uniqueIdentifier")
    location: Optional[str] = None

    # Store bookkeeping, populated on reads only.
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    original_created_at: Optional[datetime] = Field(default=None, alias="originalCreatedAt")
    original_updated_at: Optional[datetime] = Field(default=None, alias="originalUpdatedAt")

    @field_validator("timestamp")
    @classmethod
    def _timestamp_is_utc(cls, value: datetime) -> datetime:
        return to_utc(value)

    @property
    def numeric_level(self) -> int:
        try:
            return int(self.rule.level)
        except ValueError:
            return 0

    def to_document(self) -> Dict[str, Any]:
        """Serialize into the persisted document shape (camelCase keys)."""
        doc = self.model_dump(mode="json", by_alias=True, exclude_none=False)
        for key in ("createdAt", "updatedAt", "originalCreatedAt", "originalUpdatedAt"):
            if doc.get(key) is None:
                doc.pop(key, None)
        doc["timestamp"] = format_ts(self.timestamp)
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "CanonicalRecord":
        return cls.model_validate(doc)
