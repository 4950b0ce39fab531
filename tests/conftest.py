"""Shared pytest fixtures for RIFscan tests."""

from __future__ import annotations

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure the project root is importable
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

# Override data/config directories so tests don't touch real data.
os.environ["RIFSCAN_DATA_DIR"] = tempfile.mkdtemp(prefix="rifscan_test_data_")
os.environ["RIFSCAN_CONFIG_DIR"] = tempfile.mkdtemp(prefix="rifscan_test_cfg_")

T0 = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _isolated_db(tmp_path):
    """Each test gets its own database."""
    from rifscan.db import engine
    db_path = tmp_path / "test_rifscan.db"
    engine.set_db_path(db_path)
    engine.init_db(db_path)
    yield
    engine._initialized = False
    engine._db_path = None


@pytest.fixture
def make_tx():
    """Factory for canonical transactions with readable defaults."""
    from rifscan.aml.model import Method, Transaction, TxType, to_cents

    counter = {"n": 0}

    def _make(
        amount="100.00",
        hours: float = 0,
        type: str = "credit",
        method: str = "PIX",
        holder: str = "11111111111",
        counterparty_document: str = "",
        counterparty: str = "",
        case_id: str = "case-1",
        id: str = "",
    ):
        counter["n"] += 1
        return Transaction(
            id=id or f"tx{counter['n']:04d}",
            case_id=case_id,
            date=T0 + timedelta(hours=hours),
            amount=to_cents(Decimal(str(amount))),
            type=TxType(type),
            method=Method(method),
            holder_document=holder,
            counterparty_document=counterparty_document,
            counterparty=counterparty,
        )

    return _make


@pytest.fixture
def memory_store():
    from rifscan.aml.store import MemoryCaseStore
    return MemoryCaseStore()
