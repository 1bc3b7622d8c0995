from __future__ import annotations

from pathlib import Path

import pytest

from btc_trading.journal.store import JournalStore


def test_append_and_filter_recent(tmp_path: Path) -> None:
    store = JournalStore(tmp_path)
    store.append("cycle_start", {"n": 1})
    store.append("order", {"n": 2})
    store.append("cycle_end", {"n": 3})
    store.append("order", {"n": 4})

    recent = store.load_recent(2)
    assert [row["payload"]["n"] for row in recent] == [3, 4]

    orders = store.load_recent(10, event_type="order")
    assert [row["payload"]["n"] for row in orders] == [2, 4]
    assert store.load_recent(0) == []


def test_unknown_event_type_is_rejected(tmp_path: Path) -> None:
    store = JournalStore(tmp_path)
    with pytest.raises(ValueError, match="unsupported_event_type"):
        store.append("candidate", {})
    with pytest.raises(ValueError, match="unsupported_event_type"):
        store.append("position_update", {})
