from __future__ import annotations

import json
from pathlib import Path

import pytest

from perp_trader.journal.store import JournalStore


def test_write_cycle_creates_one_file_per_cycle(tmp_path: Path) -> None:
    store = JournalStore(tmp_path, "trader-a")
    path = store.write_cycle(
        {
            "cycle_number": 7,
            "timestamp": 1_700_000_000_123,
            "decisions": [{"action": "wait"}],
            "journal_dir": tmp_path,
        }
    )

    assert path.parent == tmp_path / "trader-a"
    assert path.name.startswith("cycle_7_20231114T221320")
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["decisions"] == [{"action": "wait"}]
    assert payload["journal_dir"] == str(tmp_path)


def test_write_cycle_requires_cycle_number_and_timestamp(tmp_path: Path) -> None:
    store = JournalStore(tmp_path, "trader-a")
    with pytest.raises(ValueError):
        store.write_cycle({"timestamp": 1})


def test_load_recent_returns_oldest_first(tmp_path: Path) -> None:
    store = JournalStore(tmp_path, "trader-a")
    for cycle in range(1, 4):
        store.write_cycle({"cycle_number": cycle, "timestamp": 1_700_000_000_000 + cycle})

    recent = store.load_recent(2)
    assert [row["cycle_number"] for row in recent] == [2, 3]
    assert store.load_recent(0) == []
