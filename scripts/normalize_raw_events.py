#!/usr/bin/env python
"""Dry-run the ingestion normalizer over a JSON file of raw source messages.

Accepts either a JSON array of raw events or a search response object with a
"messages" list. Nothing is written to the store.
"""
import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from logtiers.services.normalization import normalize_events


def main():
    parser = argparse.ArgumentParser(description="Normalize raw log-source events into canonical records.")
    parser.add_argument("input", help="Path to a JSON array of events or a search response")
    parser.add_argument("-o", "--output", help="Output file (defaults to stdout)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(message)s")

    try:
        data = json.loads(Path(args.input).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"Failed to read JSON: {exc}", file=sys.stderr)
        return 2

    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        data = data["messages"]
    if not isinstance(data, list):
        print("Input must be a JSON array or an object with a 'messages' list", file=sys.stderr)
        return 2

    records, dropped = normalize_events(data)
    payload = json.dumps([record.to_document() for record in records], indent=2)
    if args.output:
        Path(args.output).write_text(payload, encoding="utf-8")
    else:
        print(payload)
    print(f"{len(records)} normalized, {dropped} dropped", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
