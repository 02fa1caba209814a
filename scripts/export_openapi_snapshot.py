from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from logtiers.main import app


def main() -> int:
    parser = argparse.ArgumentParser(description="Write the read API's OpenAPI document to disk.")
    parser.add_argument("--out", default=str(Path("openapi") / "openapi.snapshot.json"))
    args = parser.parse_args()

    snapshot_path = Path(args.out)
    snapshot_path.parent.mkdir(parents=True, exist_ok=True)

    schema = app.openapi()
    snapshot_path.write_text(
        json.dumps(schema, indent=2, sort_keys=True, ensure_ascii=True) + "\n",
        encoding="utf-8",
    )
    print(f"Wrote OpenAPI snapshot to {snapshot_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
