"""Job/task persistence backed by SQLModel + SQLite."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from pathlib import Path

from sqlmodel import Session, col, select

from ivan.orchestrator.models import (
    ERROR_LOG_PREFIX,
    JobView,
    RepositoryView,
    TaskCreate,
    TaskStatus,
    TaskType,
    TaskView,
    is_valid_transition,
)
from ivan.storage.alembic_runner import upgrade_head
from ivan.storage.common import build_sqlite_engine, to_utc_aware, utc_now
from ivan.storage.sqlmodel_models import JobRow, RepositoryRow, TaskRow


class OrchestratorRepository:
    """Persistence facade for jobs, tasks and repositories."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path)

        self._connection = sqlite3.connect(db_path)
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")

    def close(self) -> None:
        """Close underlying DB resources."""

        self._connection.close()
        self.engine.dispose()

    def init_schema(self) -> None:
        """Apply pending migrations."""

        upgrade_head(self.db_path)

    def schema_version(self) -> str | None:
        """Applied head revision of the migration ledger."""

        row = self._connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'alembic_version'",
        ).fetchone()
        if row is None:
            return None
        version = self._connection.execute(
            "SELECT version_num FROM alembic_version LIMIT 1",
        ).fetchone()
        return str(version["version_num"]) if version is not None else None

    # -- repositories ------------------------------------------------------

    def get_or_create_repository(
        self,
        *,
        directory: Path,
        remote_url: str | None = None,
    ) -> RepositoryView:
        """Return the row for ``directory``, creating it on first use."""

        resolved = str(directory.resolve())
        with Session(self.engine) as session:
            row = session.exec(
                select(RepositoryRow).where(RepositoryRow.directory == resolved),
            ).one_or_none()
            if row is None:
                row = RepositoryRow(
                    directory=resolved,
                    remote_url=remote_url,
                    name=Path(resolved).name,
                    created_at=utc_now(),
                )
                session.add(row)
            elif remote_url and row.remote_url != remote_url:
                row.remote_url = remote_url
                session.add(row)
            session.commit()
            session.refresh(row)
            return _to_repository_view(row)

    # -- jobs --------------------------------------------------------------

    def create_job(
        self,
        *,
        description: str,
        working_directory: Path,
        repository_id: int | None = None,
    ) -> JobView:
        """Create an immutable job record."""

        with Session(self.engine) as session:
            row = JobRow(
                description=description,
                working_directory=str(working_directory),
                repository_id=repository_id,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: int) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(JobRow, job_id)
            return _to_job_view(row) if row is not None else None

    def list_jobs(self, *, limit: int = 20) -> list[JobView]:
        """Most recent jobs first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow).order_by(col(JobRow.id).desc()).limit(max(1, limit)),
            ).all()
            return [_to_job_view(row) for row in rows]

    # -- tasks -------------------------------------------------------------

    def add_tasks(self, job_id: int, payloads: Iterable[TaskCreate]) -> list[TaskView]:
        """Append tasks to a job, preserving the given order."""

        now = utc_now()
        with Session(self.engine) as session:
            job = session.get(JobRow, job_id)
            if job is None:
                raise RuntimeError(f"Job not found: {job_id}")
            rows = [
                TaskRow(
                    job_id=job_id,
                    description=payload.description,
                    status=TaskStatus.NOT_STARTED.value,
                    task_type=payload.task_type.value,
                    branch=payload.branch,
                    pr_link=payload.pr_link,
                    comment_url=payload.comment_url,
                    comment_id=payload.comment_id,
                    repository_id=job.repository_id,
                    created_at=now,
                    updated_at=now,
                )
                for payload in payloads
            ]
            session.add_all(rows)
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_task_view(row) for row in rows]

    def get_task(self, task_id: int) -> TaskView:
        with Session(self.engine) as session:
            return _to_task_view(self._load_task(session, task_id))

    def list_tasks(
        self,
        *,
        job_id: int | None = None,
        status: TaskStatus | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        """Tasks in creation order, optionally filtered by job and status."""

        with Session(self.engine) as session:
            query = select(TaskRow)
            if job_id is not None:
                query = query.where(TaskRow.job_id == job_id)
            if status is not None:
                query = query.where(TaskRow.status == status.value)
            query = query.order_by(col(TaskRow.id).asc())
            if limit is not None:
                query = query.limit(max(1, limit))
            return [_to_task_view(row) for row in session.exec(query).all()]

    def list_retry_eligible_tasks(self, *, job_id: int | None = None) -> list[TaskView]:
        """Reverted tasks carrying an ``ERROR:`` entry in their log."""

        return [
            task
            for task in self.list_tasks(job_id=job_id, status=TaskStatus.NOT_STARTED)
            if task.retry_eligible
        ]

    def update_status(self, task_id: int, status: TaskStatus) -> TaskView:
        """Move a task along its lifecycle, rejecting illegal transitions."""

        with Session(self.engine) as session:
            row = self._load_task(session, task_id)
            current = TaskStatus(row.status)
            if not is_valid_transition(current, status):
                raise ValueError(
                    f"Illegal status transition for task {task_id}: "
                    f"{current.value} -> {status.value}",
                )
            row.status = status.value
            return self._save(session, row)

    def assign_branch(self, task_id: int, branch: str) -> TaskView:
        """Bind a branch to a task. A task's branch never changes once set."""

        with Session(self.engine) as session:
            row = self._load_task(session, task_id)
            if row.branch is not None and row.branch != branch:
                raise ValueError(
                    f"Task {task_id} is already bound to branch {row.branch!r}; "
                    f"refusing to reassign to {branch!r}",
                )
            row.branch = branch
            return self._save(session, row)

    def set_pr_link(self, task_id: int, pr_link: str) -> TaskView:
        with Session(self.engine) as session:
            row = self._load_task(session, task_id)
            row.pr_link = pr_link
            return self._save(session, row)

    def set_commit_sha(self, task_id: int, commit_sha: str) -> TaskView:
        with Session(self.engine) as session:
            row = self._load_task(session, task_id)
            row.commit_sha = commit_sha
            return self._save(session, row)

    def set_comment_id(self, task_id: int, comment_id: str) -> TaskView:
        with Session(self.engine) as session:
            row = self._load_task(session, task_id)
            row.comment_id = comment_id
            return self._save(session, row)

    def set_execution_log(self, task_id: int, log: str) -> TaskView:
        with Session(self.engine) as session:
            row = self._load_task(session, task_id)
            row.execution_log = log
            return self._save(session, row)

    def append_execution_log(self, task_id: int, text: str) -> TaskView:
        """Append to the log verbatim; callers supply their own separators."""

        with Session(self.engine) as session:
            row = self._load_task(session, task_id)
            row.execution_log = f"{row.execution_log or ''}{text}"
            return self._save(session, row)

    def record_failure(self, task_id: int, message: str) -> TaskView:
        """Log ``ERROR: <message>`` and revert the task to ``not_started``."""

        with Session(self.engine) as session:
            row = self._load_task(session, task_id)
            entry = f"{ERROR_LOG_PREFIX} {message}"
            row.execution_log = f"{row.execution_log}\n\n{entry}" if row.execution_log else entry
            row.status = TaskStatus.NOT_STARTED.value
            return self._save(session, row)

    def _load_task(self, session: Session, task_id: int) -> TaskRow:
        row = session.get(TaskRow, task_id)
        if row is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return row

    def _save(self, session: Session, row: TaskRow) -> TaskView:
        row.updated_at = utc_now()
        session.add(row)
        session.commit()
        session.refresh(row)
        return _to_task_view(row)


def _to_repository_view(row: RepositoryRow) -> RepositoryView:
    assert row.id is not None
    return RepositoryView(
        repository_id=row.id,
        directory=row.directory,
        remote_url=row.remote_url,
        name=row.name,
        created_at=to_utc_aware(row.created_at),
    )


def _to_job_view(row: JobRow) -> JobView:
    assert row.id is not None
    return JobView(
        job_id=row.id,
        description=row.description,
        working_directory=row.working_directory,
        repository_id=row.repository_id,
        created_at=to_utc_aware(row.created_at),
    )


def _to_task_view(row: TaskRow) -> TaskView:
    assert row.id is not None
    return TaskView(
        task_id=row.id,
        job_id=row.job_id,
        description=row.description,
        status=TaskStatus(row.status),
        task_type=TaskType(row.task_type),
        branch=row.branch,
        pr_link=row.pr_link,
        execution_log=row.execution_log,
        commit_sha=row.commit_sha,
        comment_url=row.comment_url,
        comment_id=row.comment_id,
        repository_id=row.repository_id,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
