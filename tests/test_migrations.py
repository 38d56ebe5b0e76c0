from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from app.settings import settings

ROOT = Path(__file__).resolve().parents[1]


def test_alembic_upgrade_head(tmp_path):
    db_path = tmp_path / "test.db"
    config = Config(str(ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT / "alembic"))
    original_database_url = settings.database_url
    try:
        settings.database_url = f"sqlite+aiosqlite:///{db_path}"
        command.upgrade(config, "head")
    finally:
        settings.database_url = original_database_url

    engine = create_engine(f"sqlite:///{db_path}")
    inspector = inspect(engine)
    tables = inspector.get_table_names()
    assert "subscriptions" in tables
    assert "subscription_schedules" in tables
    assert "subscription_events" in tables
    assert "jobs" in tables
    assert "invoices" in tables
    assert "number_sequences" in tables
    schedule_indexes = {
        tuple(constraint["column_names"])
        for constraint in inspector.get_unique_constraints("subscription_schedules")
    } | {
        tuple(index["column_names"])
        for index in inspector.get_indexes("subscription_schedules")
        if index.get("unique")
    }
    assert ("subscription_id", "scheduled_date") in schedule_indexes
    with engine.connect() as conn:
        version = conn.exec_driver_sql("SELECT version_num FROM alembic_version").scalar()
    assert version == "0001_subscription_billing"
    engine.dispose()
