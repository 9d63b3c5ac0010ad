"""JSON decision-log store, one file per cycle."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_REQUIRED_KEYS = ("cycle_number", "timestamp")


class JournalStore:
    """Write-once cycle logs under ``<journal_dir>/<trader_id>/``."""

    def __init__(self, journal_dir: Path, trader_id: str) -> None:
        self._dir = journal_dir / trader_id
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def write_cycle(self, log: dict[str, Any]) -> Path:
        """Persist one cycle log and return its path."""
        for key in _REQUIRED_KEYS:
            if key not in log:
                raise ValueError(f"cycle_log_missing_{key}")
        stamp = datetime.fromtimestamp(log["timestamp"] / 1000, tz=timezone.utc)
        file_path = self._dir / f"cycle_{int(log['cycle_number'])}_{stamp:%Y%m%dT%H%M%S%f}.json"
        file_path.write_text(
            json.dumps(log, ensure_ascii=True, indent=2, default=_json_default),
            encoding="utf-8",
        )
        return file_path

    def load_recent(self, limit: int) -> list[dict[str, Any]]:
        """Load the most recent cycle logs, oldest first."""
        if limit <= 0:
            return []

        files = sorted(self._dir.glob("cycle_*.json"), key=_cycle_sort_key)
        rows: list[dict[str, Any]] = []
        for file in files[-limit:]:
            rows.append(json.loads(file.read_text(encoding="utf-8")))
        return rows


def _cycle_sort_key(path: Path) -> tuple[str, int]:
    # cycle_<n>_<stamp>.json
    _, number, stamp = path.stem.split("_", 2)
    return stamp, int(number)


def _json_default(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "model_dump"):
        return value.model_dump()
    raise TypeError(f"not_json_serializable: {type(value).__name__}")
