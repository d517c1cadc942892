from pathlib import Path

import allure
from sqlalchemy import text

from pm_orchestrator.queue.repository import SqlQueueStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = SqlQueueStore(tmp_path / "migrations.db")
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('tasks', 'task_events', 'plans', 'plan_tasks')
                ORDER BY name
                """,
            ),
        ).fetchall()

    assert version == "20261019_0002"
    assert [row[0] for row in tables] == ["plan_tasks", "plans", "task_events", "tasks"]
    store.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    store = SqlQueueStore(tmp_path / "migrations.db")
    store.init_schema()
    store.init_schema()

    with store.engine.connect() as connection:
        versions = connection.execute(text("SELECT version_num FROM alembic_version")).fetchall()

    assert [row[0] for row in versions] == ["20261019_0002"]
    store.close()
