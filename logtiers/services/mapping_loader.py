"""
logtiers/services/mapping_loader.py

Loads and caches the field-resolution table from config/field_mappings.yaml.

For every canonical field the table lists candidate source paths in priority
order; the first one that yields a non-empty value wins. Paths are rooted at
either ``payload`` (the decoded event body) or ``envelope`` (the fields the log
source attached around it). Profile names correspond to the envelope's
``source`` value; unknown sources fall back to the _default profile.

CLI validation:
    python -m logtiers.services.mapping_loader --validate
"""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

# ---------------------------------------------------------------------------
# Module-level cache, populated on first call.
# ---------------------------------------------------------------------------
_CACHE: Optional[Dict[str, Any]] = None

_DEFAULT_CONFIG_PATH = (
    Path(__file__).resolve().parents[2] / "config" / "field_mappings.yaml"
)

_PATH_ROOTS = ("payload", "envelope")

# Keys at the top level that are tables rather than profiles.
_FALLBACKS_KEY = "_fallbacks"
_SEVERITY_KEY = "_severity_levels"
_RESERVED_KEYS = {_FALLBACKS_KEY, _SEVERITY_KEY}

# Canonical fields that the _default profile must cover (uniqueIdentifier and
# rawLog are derived, never looked up).
REQUIRED_CANONICAL_FIELDS = [
    "timestamp",
    "nativeId",
    "agent.name",
    "rule.level",
    "rule.description",
    "network.srcIp",
    "network.destIp",
    "network.protocol",
]

OPTIONAL_CANONICAL_FIELDS = [
    "agent.id",
    "agent.ip",
    "rule.groups",
    "location",
]

KNOWN_CANONICAL_FIELDS = set(REQUIRED_CANONICAL_FIELDS) | set(OPTIONAL_CANONICAL_FIELDS)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def load_mappings(force_reload: bool = False) -> Dict[str, Any]:
    """Load and cache the field mappings config.

    Reads MAPPING_CONFIG_PATH env var if set, otherwise uses the bundled
    config/field_mappings.yaml. Raises RuntimeError on missing or malformed
    config.
    """
    global _CACHE
    if _CACHE is not None and not force_reload:
        return _CACHE

    config_path_str = os.environ.get("MAPPING_CONFIG_PATH")
    config_path = Path(config_path_str) if config_path_str else _DEFAULT_CONFIG_PATH

    if not config_path.exists():
        raise RuntimeError(
            f"Field mappings config not found at: {config_path}. "
            "Set MAPPING_CONFIG_PATH env var to override the default location."
        )

    with config_path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)

    if not isinstance(data, dict):
        raise RuntimeError(
            f"Field mappings config at {config_path} must be a YAML mapping at the top level."
        )

    _CACHE = data
    return _CACHE


def get_field_paths(source: Optional[str], field: str) -> List[str]:
    """Return the ordered candidate paths for a canonical field within a profile.

    Falls back to _default if the source profile is unknown or the field
    is not defined in the profile.
    """
    mappings = load_mappings()
    profile = mappings.get(source, {}) if source and source not in _RESERVED_KEYS else {}
    paths = profile.get(field) if isinstance(profile, dict) else None

    if not paths:
        default = mappings.get("_default", {})
        paths = default.get(field, [])

    return list(paths) if isinstance(paths, list) else []


def get_fallbacks() -> Dict[str, Any]:
    """Default values used when every candidate path of a field is empty."""
    fallbacks = load_mappings().get(_FALLBACKS_KEY) or {}
    return dict(fallbacks) if isinstance(fallbacks, dict) else {}


def get_severity_levels() -> Dict[str, int]:
    """Lower-cased severity word -> numeric rule level."""
    table = load_mappings().get(_SEVERITY_KEY) or {}
    if not isinstance(table, dict):
        return {}
    return {str(word).lower(): int(level) for word, level in table.items()}


# ---------------------------------------------------------------------------
# Validation logic (used by both the CLI and tests)
# ---------------------------------------------------------------------------

def _path_errors(profile_name: str, field: str, paths: Any) -> List[str]:
    if not isinstance(paths, list) or len(paths) == 0:
        return [f"Profile '{profile_name}': field '{field}' has an empty path list."]
    errors: List[str] = []
    for path in paths:
        if not isinstance(path, str) or path.split(".", 1)[0] not in _PATH_ROOTS or "." not in path:
            errors.append(
                f"Profile '{profile_name}': field '{field}' has invalid path {path!r} "
                f"(must start with one of: {', '.join(r + '.' for r in _PATH_ROOTS)})."
            )
    return errors


def validate_mappings(mappings: Dict[str, Any]) -> List[str]:
    """Validate the loaded mappings dict. Returns a list of error strings.

    Rules:
    - _default profile must exist.
    - Every field in REQUIRED_CANONICAL_FIELDS must appear in _default
      with a non-empty list of paths.
    - Every path is rooted at payload. or envelope.
    - Profiles may only name known canonical fields.
    - _fallbacks, if present, must be a mapping of known fields.
    - _severity_levels, if present, must map words to non-negative integers.
    """
    errors: List[str] = []

    if "_default" not in mappings:
        errors.append("Missing required '_default' profile.")
        return errors  # can't validate further without _default

    default = mappings["_default"]
    if not isinstance(default, dict):
        errors.append("'_default' profile must be a YAML mapping.")
        return errors

    for field in REQUIRED_CANONICAL_FIELDS:
        if not default.get(field):
            errors.append(f"_default profile is missing paths for required field '{field}'.")

    for profile_name, profile in mappings.items():
        if profile_name in _RESERVED_KEYS:
            continue
        if not isinstance(profile, dict):
            errors.append(f"Profile '{profile_name}' must be a YAML mapping, got {type(profile).__name__}.")
            continue
        for field, paths in profile.items():
            if field not in KNOWN_CANONICAL_FIELDS:
                errors.append(f"Profile '{profile_name}': unknown canonical field '{field}'.")
                continue
            errors.extend(_path_errors(profile_name, field, paths))

    fallbacks = mappings.get(_FALLBACKS_KEY)
    if fallbacks is not None:
        if not isinstance(fallbacks, dict):
            errors.append("_fallbacks must be a YAML mapping.")
        else:
            for field in fallbacks:
                if field not in KNOWN_CANONICAL_FIELDS:
                    errors.append(f"_fallbacks: unknown canonical field '{field}'.")

    severity = mappings.get(_SEVERITY_KEY)
    if severity is not None:
        if not isinstance(severity, dict) or len(severity) == 0:
            errors.append("_severity_levels must be a non-empty YAML mapping.")
        else:
            for word, level in severity.items():
                if isinstance(level, bool) or not isinstance(level, int) or level < 0:
                    errors.append(f"_severity_levels: '{word}' must map to a non-negative integer.")

    return errors


# ---------------------------------------------------------------------------
# CLI entry point: python -m logtiers.services.mapping_loader --validate
# ---------------------------------------------------------------------------

def _main() -> None:
    if "--validate" not in sys.argv:
        print("Usage: python -m logtiers.services.mapping_loader --validate", file=sys.stderr)
        sys.exit(1)

    try:
        mappings = load_mappings(force_reload=True)
    except RuntimeError as exc:
        print(f"FAIL  Config load error: {exc}", file=sys.stderr)
        sys.exit(1)

    errors = validate_mappings(mappings)

    profiles = [k for k in mappings if not k.startswith("_")]
    print(f"Profiles found: {', '.join(profiles) or '(none)'}")
    print(f"Required canonical fields checked: {', '.join(REQUIRED_CANONICAL_FIELDS)}")

    if errors:
        for err in errors:
            print(f"FAIL  {err}", file=sys.stderr)
        sys.exit(1)

    print("OK    All checks passed.")


if __name__ == "__main__":
    _main()
