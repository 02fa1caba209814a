from __future__ import annotations

import hashlib
import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from logtiers.schemas.record import CanonicalRecord, format_ts_millis, parse_ts
from logtiers.services.errors import MalformedRecordError
from logtiers.services.mapping_loader import get_fallbacks, get_field_paths, get_severity_levels

logger = logging.getLogger(__name__)

# How the event body arrived.
KIND_EMBEDDED = "embedded"      # body is a JSON string
KIND_NESTED = "nested"          # body is an object whose "message" is a JSON string
KIND_STRUCTURED = "structured"  # body is already an object
KIND_TEXT = "text"              # body is a plain, non-JSON string


@dataclass(frozen=True)
class RawEvent:
    kind: str
    envelope: Dict[str, Any]
    payload: Dict[str, Any]

    @property
    def source(self) -> Optional[str]:
        value = self.envelope.get("source")
        return value if isinstance(value, str) and value else None


ExtractionRule = Callable[[RawEvent], Optional[Any]]


def _decode_json_object(text: str) -> Optional[Dict[str, Any]]:
    s = text.strip()
    if not s.startswith("{"):
        return None
    try:
        decoded = json.loads(s)
    except ValueError:
        return None
    return decoded if isinstance(decoded, dict) else None


def parse_raw_event(raw: Any) -> RawEvent:
    """Classify the event body and split it into envelope and payload."""
    if not isinstance(raw, dict):
        raise MalformedRecordError(f"raw event must be an object, got {type(raw).__name__}")

    if "message" not in raw:
        return RawEvent(KIND_STRUCTURED, raw, raw)

    body = raw["message"]
    outer = {k: v for k, v in raw.items() if k != "message"}

    if isinstance(body, dict):
        inner = body.get("message")
        if isinstance(inner, str):
            decoded = _decode_json_object(inner)
            if decoded is not None:
                return RawEvent(KIND_NESTED, body, decoded)
        return RawEvent(KIND_STRUCTURED, body, body)

    if isinstance(body, str):
        decoded = _decode_json_object(body)
        if decoded is not None:
            return RawEvent(KIND_EMBEDDED, outer, decoded)
        return RawEvent(KIND_TEXT, {**outer, "message": body}, {})

    raise MalformedRecordError(f"unsupported message body type {type(body).__name__}")


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def path_rule(path: str) -> ExtractionRule:
    """Build a rule reading a dotted path under payload. or envelope."""
    root, _, dotted = path.partition(".")
    keys = dotted.split(".")

    def rule(event: RawEvent) -> Optional[Any]:
        node: Any = event.payload if root == "payload" else event.envelope
        for key in keys:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        return None if _is_empty(node) else node

    rule.__name__ = f"path_rule[{path}]"
    return rule


def rules_for(source: Optional[str], field: str) -> List[ExtractionRule]:
    return [path_rule(path) for path in get_field_paths(source, field)]


def first_value(event: RawEvent, rules: List[ExtractionRule]) -> Optional[Any]:
    for rule in rules:
        value = rule(event)
        if value is not None:
            return value
    return None


def coerce_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        number = float(value)
        if not math.isfinite(number):
            return None
        # Heuristic: >1e12 looks like ms
        if number > 1_000_000_000_000:
            number = number / 1000.0
        try:
            return datetime.fromtimestamp(number, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        s = value.strip()
        if s.isdigit():
            return coerce_timestamp(int(s))
        # Some shippers use "+0000" offsets.
        if len(s) > 5 and s[-5] in "+-" and s[-4:].isdigit() and s[-3] != ":":
            s = s[:-2] + ":" + s[-2:]
        return parse_ts(s)

    return None


def normalize_level(value: Any, severity_levels: Optional[Dict[str, int]] = None) -> str:
    """Numeric rule level as text. Severity words map through the table."""
    if severity_levels is None:
        severity_levels = get_severity_levels()
    if value is None or isinstance(value, bool):
        return "0"

    if isinstance(value, (int, float)):
        number = float(value)
    else:
        s = str(value).strip()
        try:
            number = float(s)
        except ValueError:
            return str(severity_levels.get(s.lower(), 0))

    if not math.isfinite(number) or number < 0:
        return "0"
    return str(int(number))


def compute_unique_identifier(
    timestamp: datetime, native_id: Optional[str], raw_log: Any
) -> str:
    prefix = format_ts_millis(timestamp)
    if native_id:
        return f"{prefix}_{native_id}"
    body = json.dumps(raw_log, sort_keys=True, default=str, separators=(",", ":"))
    return f"{prefix}_{hashlib.md5(body.encode('utf-8')).hexdigest()}"


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _resolve(event: RawEvent, field: str, fallbacks: Dict[str, Any]) -> Optional[Any]:
    value = first_value(event, rules_for(event.source, field))
    if value is None:
        return fallbacks.get(field)
    return value


def normalize_event(raw: Any) -> CanonicalRecord:
    """Map one raw event onto the canonical record.

    Raises MalformedRecordError when no usable timestamp can be resolved or the
    result does not validate.
    """
    event = parse_raw_event(raw)
    fallbacks = get_fallbacks()

    ts = coerce_timestamp(_resolve(event, "timestamp", fallbacks))
    if ts is None:
        raise MalformedRecordError("no resolvable timestamp")

    raw_log: Any = event.payload if event.payload else event.envelope
    native_id = _as_text(_resolve(event, "nativeId", fallbacks))

    groups = _resolve(event, "rule.groups", fallbacks)
    if not isinstance(groups, list):
        groups = []

    candidate = {
        "timestamp": ts,
        "agent": {
            "name": _as_text(_resolve(event, "agent.name", fallbacks)) or "unknown",
            "id": _as_text(_resolve(event, "agent.id", fallbacks)),
            "ip": _as_text(_resolve(event, "agent.ip", fallbacks)),
        },
        "rule": {
            "level": normalize_level(_resolve(event, "rule.level", fallbacks)),
            "description": _as_text(_resolve(event, "rule.description", fallbacks)) or "No description",
            "groups": [str(g) for g in groups],
        },
        "network": {
            "srcIp": _as_text(_resolve(event, "network.srcIp", fallbacks)),
            "destIp": _as_text(_resolve(event, "network.destIp", fallbacks)),
            "protocol": _as_text(_resolve(event, "network.protocol", fallbacks)),
        },
        "rawLog": raw_log,
        "nativeId": native_id,
        "uniqueIdentifier": compute_unique_identifier(ts, native_id, raw_log),
        "location": _as_text(_resolve(event, "location", fallbacks)),
    }

    try:
        return CanonicalRecord.model_validate(candidate)
    except ValidationError as exc:
        raise MalformedRecordError(str(exc)) from exc


def normalize_events(raw_events: Any) -> Tuple[List[CanonicalRecord], int]:
    """Normalize a batch. Returns (records, dropped); bad events are logged and skipped."""
    if not isinstance(raw_events, list):
        return [], 0

    records: List[CanonicalRecord] = []
    dropped = 0
    for position, item in enumerate(raw_events):
        try:
            records.append(normalize_event(item))
        except MalformedRecordError as exc:
            dropped += 1
            logger.warning(f"Dropped raw event #{position}: {exc}")

    return records, dropped
