"""
Shared fixtures: an in-memory ledger and a scriptable fake broker.
"""

import pytest

from helpers import FakeBrokerGateway, make_settings
from mt5control.ledger.store import LedgerStore


@pytest.fixture
def gateway():
    return FakeBrokerGateway()


@pytest.fixture
def ledger():
    return LedgerStore(None)


@pytest.fixture
def settings():
    return make_settings()
