"""Alembic migration builds the same schema the engine uses."""

from pathlib import Path

import sqlalchemy as sa
from alembic import command
from alembic.config import Config

from backend.apps.installments.schema import _METADATA

SCRIPT_LOCATION = Path(__file__).resolve().parents[2] / "ops" / "alembic"


def _config(db_url: str) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(SCRIPT_LOCATION))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def test_upgrade_creates_all_tables(tmp_path):
    db_url = f"sqlite:///{tmp_path / 'migrated.sqlite'}"

    command.upgrade(_config(db_url), "head")

    engine = sa.create_engine(db_url, future=True)
    inspector = sa.inspect(engine)
    assert set(_METADATA.tables) <= set(inspector.get_table_names())
    uniques = {u["name"] for u in inspector.get_unique_constraints("notification_records")}
    assert "uq_notification_records_dedup_key" in uniques
    engine.dispose()


def test_downgrade_removes_tables(tmp_path):
    db_url = f"sqlite:///{tmp_path / 'migrated.sqlite'}"
    cfg = _config(db_url)
    command.upgrade(cfg, "head")

    command.downgrade(cfg, "base")

    engine = sa.create_engine(db_url, future=True)
    assert set(sa.inspect(engine).get_table_names()) <= {"alembic_version"}
    engine.dispose()
