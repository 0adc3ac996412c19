#!/usr/bin/env python3
"""Engine state persistence."""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from engine_state import EngineState, EngineStateStore, Position, StrandedFunds
from state_io import CorruptStateError, PersistenceError
from venues import VenueId


def test_missing_file_starts_fresh(tmp_path) -> None:
    state = EngineStateStore(str(tmp_path / "state.json")).load()
    assert state.positions == {}
    assert state.stranded is None
    assert state.total_trades == 0


def test_save_then_load_preserves_large_integers(tmp_path) -> None:
    store = EngineStateStore(str(tmp_path / "state.json"))
    state = EngineState(total_pnl=-(2**62), total_trades=4, errors=1, last_check=10, started_at=5)
    state.positions[VenueId.JITO] = Position(
        venue=VenueId.JITO, held_amount=2**60 + 1, entry_price=1.1,
        cost_basis=2**61, entry_timestamp=99, entry_apy_bps=781,
    )
    state.stranded = StrandedFunds(
        amount=123, from_venue=VenueId.MARINADE, target_venue=VenueId.JITO,
        since=50, cost_basis=100, reason="slippage", attempts=2,
    )
    store.save(state)

    raw = json.loads((tmp_path / "state.json").read_text())
    assert raw["positions"][0]["held_amount"] == str(2**60 + 1)

    loaded = store.load()
    assert loaded.positions[VenueId.JITO].held_amount == 2**60 + 1
    assert loaded.positions[VenueId.JITO].cost_basis == 2**61
    assert loaded.total_pnl == -(2**62)
    assert loaded.stranded.attempts == 2
    assert loaded.stranded.target_venue == VenueId.JITO
    assert loaded.is_stranded
    assert loaded.started_at == 5


def test_corrupt_state_is_fatal(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{broken")
    with pytest.raises(CorruptStateError):
        EngineStateStore(str(path)).load()


def test_duplicate_positions_are_corrupt() -> None:
    payload = {
        "positions": [
            {"venue": 4, "held_amount": "1", "cost_basis": "1", "entry_timestamp": 1},
            {"venue": "jito", "held_amount": "2", "cost_basis": "2", "entry_timestamp": 2},
        ]
    }
    with pytest.raises(CorruptStateError):
        EngineState.from_dict(payload)


def test_unknown_venue_is_corrupt() -> None:
    with pytest.raises(CorruptStateError):
        EngineState.from_dict({"positions": [{"venue": 42, "held_amount": "1", "cost_basis": "1",
                                              "entry_timestamp": 1}]})


def test_unwritable_state_raises_persistence_error(tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory")
    store = EngineStateStore(str(blocker / "state.json"))
    with pytest.raises(PersistenceError):
        store.save(EngineState())


def test_invested_sums_cost_basis() -> None:
    state = EngineState()
    state.positions[VenueId.JITO] = Position(VenueId.JITO, 10, 1.0, 100, 1)
    state.positions[VenueId.MARINADE] = Position(VenueId.MARINADE, 10, 1.0, 50, 1)
    assert state.invested() == 150
