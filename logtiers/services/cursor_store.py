from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class IngestionCursor(BaseModel):
    """Upper bound of the last fetch window whose store write completed."""

    last_fetched: Optional[datetime] = None

    def advanced_to(self, instant: datetime) -> "IngestionCursor":
        return IngestionCursor(last_fetched=instant)


class CursorStore:
    """Persists the ingestion cursor as a small JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> IngestionCursor:
        with self._lock:
            if not self._path.exists():
                return IngestionCursor()
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
                return IngestionCursor.model_validate(raw)
            except (OSError, ValueError, ValidationError) as exc:
                logger.warning(f"Failed reading cursor {self._path}; starting from lookback: {exc}")
                return IngestionCursor()

    def save(self, cursor: IngestionCursor) -> None:
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(cursor.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
