from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, inspect, text

from backend.app.db import Base


ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def _load_script() -> ScriptDirectory:
    config = Config(str(ALEMBIC_INI))
    return ScriptDirectory.from_config(config)


def _config_for(database_url: str) -> Config:
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("sqlalchemy.url", database_url)
    config.attributes["skip_env_url"] = True
    return config


def test_alembic_single_head():
    script = _load_script()
    heads = script.get_heads()
    assert len(heads) == 1


def test_upgrade_creates_model_tables(tmp_path):
    database_url = f"sqlite:///{tmp_path / 'alembic.db'}"
    command.upgrade(_config_for(database_url), "head")

    engine = create_engine(database_url, future=True)
    with engine.connect() as conn:
        revision = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
    migrated = set(inspect(engine).get_table_names())
    engine.dispose()

    assert revision == _load_script().get_heads()[0]
    assert set(Base.metadata.tables) <= migrated


def test_downgrade_removes_tables(tmp_path):
    database_url = f"sqlite:///{tmp_path / 'roundtrip.db'}"
    config = _config_for(database_url)
    command.upgrade(config, "head")
    command.downgrade(config, "base")

    engine = create_engine(database_url, future=True)
    remaining = set(inspect(engine).get_table_names()) - {"alembic_version"}
    engine.dispose()
    assert remaining == set()


def test_sqlite_bootstrap_creates_tables(tmp_path):
    db_path = tmp_path / "bootstrap.db"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(bind=engine)
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    assert {"alerts", "approval_requests", "processed_webhook_events"} <= tables
    index_names = {index["name"] for index in inspector.get_indexes("alerts")}
    assert "uq_alerts_open_source" in index_names
