"""
Pytest configuration and fixtures.
Adds the repo root to sys.path so tests can import core/ and cogs/.
"""

import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from core.state import AppState
from core.db import db_init, db_init_trades, db_missing_add
from core.trading import TradeOrchestrator


@pytest.fixture
def state(tmp_path):
    st = AppState(db_path=str(tmp_path / "trades.sqlite3"))
    db_init(st)
    db_init_trades(st)
    return st


@pytest.fixture
def orch(state):
    return TradeOrchestrator(state, retry_delay=0)


@pytest.fixture
def alice_needs_007(state):
    """alice lacks SetA #007; bob lacks SetA #010."""
    db_missing_add(state, "alice", "SetA", "007")
    db_missing_add(state, "bob", "SetA", "010")
    return state
