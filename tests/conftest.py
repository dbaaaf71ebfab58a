"""Shared fixtures: in-memory database and a controllable clock."""

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from rebalancer.database import create_db_and_tables
from rebalancer.services.ledger import Ledger


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(db):
    return Ledger(db)


@pytest.fixture
def user(ledger):
    return ledger.add_user(
        telegram_id=4242,
        wallet_address="WaLLet1111111111111111111111111111111111111",
        wallet_secret_encrypted="sealed",
        username="lp_user",
    )
