"""SQLModel ORM tables for jobs, tasks and repositories."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class RepositoryRow(SQLModel, table=True):
    __tablename__ = "repositories"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("directory", name="uq_repositories_directory"),)

    id: int | None = Field(default=None, primary_key=True)
    directory: str
    remote_url: str | None = None
    name: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    working_directory: str
    repository_id: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_job_status", "job_id", "status"),
        Index("idx_tasks_repository", "repository_id"),
        CheckConstraint(
            "type IN ('build', 'address', 'lint_and_test')",
            name="ck_tasks_type",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    description: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(
        default="not_started",
        sa_column=Column(String, nullable=False, server_default="not_started"),
    )
    task_type: str = Field(
        default="build",
        sa_column=Column("type", String, nullable=False, server_default="build"),
    )
    branch: str | None = None
    pr_link: str | None = None
    execution_log: str | None = Field(default=None, sa_column=Column(Text))
    commit_sha: str | None = None
    comment_url: str | None = None
    comment_id: str | None = None
    repository_id: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
