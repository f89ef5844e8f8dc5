import sqlite3
from pathlib import Path

import allure
import pytest

from ivan.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Migration Ledger"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "migrations.db")
    repository.init_schema()

    assert repository.schema_version() == "20261019_0011"

    tables = repository._connection.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type = 'table' AND name IN ('jobs', 'tasks', 'repositories')
        ORDER BY name
        """
    ).fetchall()
    assert [str(row["name"]) for row in tables] == ["jobs", "repositories", "tasks"]

    columns = {
        str(row["name"])
        for row in repository._connection.execute("PRAGMA table_info(tasks)").fetchall()
    }
    assert {
        "execution_log",
        "branch",
        "type",
        "comment_url",
        "commit_sha",
        "repository_id",
        "comment_id",
    } <= columns
    repository.close()


def test_schema_version_is_none_before_migrations(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "fresh.db")

    assert repository.schema_version() is None
    repository.close()


def test_migrations_are_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = OrchestratorRepository(db_path)
    first.init_schema()
    job = first.create_job(description="keep me", working_directory=tmp_path)
    first.close()

    second = OrchestratorRepository(db_path)
    second.init_schema()

    assert second.schema_version() == "20261019_0011"
    assert second.get_job(job.job_id) is not None
    second.close()


def test_task_type_check_constraint_rejects_unknown_types(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "constraint.db")
    repository.init_schema()
    job = repository.create_job(description="job", working_directory=tmp_path)

    with pytest.raises(sqlite3.IntegrityError):
        repository._connection.execute(
            """
            INSERT INTO tasks (job_id, description, status, type, created_at, updated_at)
            VALUES (?, 'bad', 'not_started', 'deploy', '2026-01-01', '2026-01-01')
            """,
            (job.job_id,),
        )
    repository.close()


def test_deleting_a_job_cascades_to_its_tasks(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "cascade.db")
    repository.init_schema()
    job = repository.create_job(description="job", working_directory=tmp_path)
    repository._connection.execute(
        """
        INSERT INTO tasks (job_id, description, status, type, created_at, updated_at)
        VALUES (?, 'child', 'not_started', 'build', '2026-01-01', '2026-01-01')
        """,
        (job.job_id,),
    )
    repository._connection.commit()

    repository._connection.execute("DELETE FROM jobs WHERE id = ?", (job.job_id,))
    repository._connection.commit()

    remaining = repository._connection.execute("SELECT COUNT(*) AS n FROM tasks").fetchone()
    assert remaining["n"] == 0
    repository.close()
