import pytest

from helpers import FakeClock
from orchestrator.ledger.store import IncidentLedger


@pytest.fixture
def ledger_path(tmp_path):
    return tmp_path / "data" / "ledger.jsonl"


@pytest.fixture
def ledger(ledger_path):
    return IncidentLedger(ledger_path)


@pytest.fixture
def clock():
    return FakeClock()
