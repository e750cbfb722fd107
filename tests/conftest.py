"""
Pytest configuration and shared fixtures.
"""
import os

# Keep a developer's DATABASE_URL out of config-loading tests.
os.environ.pop("DATABASE_URL", None)

import pytest

from trade_diary.ledger.fifo_matcher import PositionLedger
from trade_diary.ledger.service import LedgerService
from trade_diary.storage.db import init_db
from trade_diary.storage.repository import PositionRepository


@pytest.fixture
def db():
    """Fresh in-memory SQLite database with the schema created."""
    database = init_db("sqlite://")
    yield database
    database.dispose()


@pytest.fixture
def repo(db):
    return PositionRepository(db)


@pytest.fixture
def ledger(repo):
    return PositionLedger(repo)


@pytest.fixture
def service(repo):
    return LedgerService(repo)
