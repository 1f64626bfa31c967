import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("EXPIRY_SWEEP_ENABLED", "false")

from dataclasses import replace
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import stockledger.models  # noqa: F401
from stockledger.core.config import settings
from stockledger.db.database import Base
from stockledger.services.ledger_service import LedgerService

VENUE = "venue-1"
PRODUCT = "popcorn-large"


class Clock:
    def __init__(self, today: date) -> None:
        self.today = today

    def __call__(self) -> date:
        return self.today


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return Clock(date(2025, 1, 31))


@pytest.fixture
def config():
    return replace(
        settings,
        alerts_enabled=True,
        low_stock_threshold=5,
        overstock_threshold=0,
        expiry_warning_days=3,
        lock_timeout_seconds=5,
    )


@pytest.fixture
def service(session_factory, clock, config):
    return LedgerService(session_factory, config=config, today=clock)
