from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from app.models import Base


APP_DIR = Path(__file__).resolve().parents[1]


def _alembic_config(url: str) -> Config:
    cfg = Config(str(APP_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(APP_DIR / "alembic"))
    cfg.set_main_option("sqlalchemy.url", url)
    return cfg


def test_migrations_match_models(tmp_path):
    url = f"sqlite:///{tmp_path / 'schema.db'}"
    cfg = _alembic_config(url)
    command.upgrade(cfg, "head")

    insp = inspect(create_engine(url))
    for table in Base.metadata.sorted_tables:
        assert insp.has_table(table.name), table.name
        cols = {c["name"] for c in insp.get_columns(table.name)}
        assert cols == {c.name for c in table.columns}, table.name

    uniques = insp.get_unique_constraints("failed_attempts")
    assert any(set(u["column_names"]) == {"identifier", "kind"} for u in uniques)

    command.downgrade(cfg, "base")
    assert not inspect(create_engine(url)).has_table("users")
