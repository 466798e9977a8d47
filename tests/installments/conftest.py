"""Fixtures for installment engine tests: SQLite database and seed helpers."""

import os
import time

import pytest
import sqlalchemy as sa
from sqlalchemy.engine import Engine

from backend.apps.installments.schema import _METADATA
from backend.core.observability import metrics
from tests.installments.helpers import Seeder


@pytest.fixture
def engine(tmp_path) -> Engine:
    db_path = tmp_path / "installments.sqlite"
    engine = sa.create_engine(f"sqlite:///{db_path}", future=True, connect_args={"timeout": 30})
    _METADATA.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def seed(engine) -> Seeder:
    return Seeder(engine)


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset_metrics()
    yield
    metrics.reset_metrics()


@pytest.fixture
def new_york_host():
    """Run with the process clock in America/New_York (UTC-5 in January)."""
    previous = os.environ.get("TZ")
    os.environ["TZ"] = "America/New_York"
    time.tzset()
    yield
    if previous is None:
        os.environ.pop("TZ", None)
    else:
        os.environ["TZ"] = previous
    time.tzset()
