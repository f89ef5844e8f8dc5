"""CLI entrypoint for ivan."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from ivan import __version__
from ivan.orchestrator.controllers import (
    AddressCommand,
    ListJobsCommand,
    ListTasksCommand,
    OrchestratorCliController,
    RetryCommand,
    RunCommand,
)
from ivan.orchestrator.errors import IvanError

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="ivan")
def ivan() -> None:
    """Ivan: turn requests into pull requests and answer their reviews.

    Run `ivan run "<request>"` inside a git clone.
    """

    logging.basicConfig(
        level=os.getenv("IVAN_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@ivan.command("run")
@click.argument("request")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--task",
    "tasks",
    multiple=True,
    help="Explicit task description. Can be repeated; skips the agent breakdown.",
)
@click.option("--single-pr", is_flag=True, help="Run every task on one branch and open one PR.")
@click.option(
    "--wait-for-reviews",
    is_flag=True,
    help="After opening PRs, wait for the review window and address new comments.",
)
@click.option(
    "--no-sync",
    is_flag=True,
    help="Do not stash, clean and pull the default branch of the original checkout first.",
)
@click.option(
    "--repo",
    "repo_dir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Git clone to work in. Defaults to the current directory.",
)
def run(  # noqa: PLR0913
    request: str,
    db_path: Path | None,
    tasks: tuple[str, ...],
    single_pr: bool,
    wait_for_reviews: bool,
    no_sync: bool,
    repo_dir: Path | None,
) -> None:
    """Create a job from `REQUEST`, break it into tasks and open pull requests."""

    _emit_lines(
        _invoke(
            ORCHESTRATOR_CONTROLLER.run,
            RunCommand(
                db_path=db_path,
                request=request,
                tasks=tasks,
                single_pr=single_pr,
                wait_for_reviews=wait_for_reviews,
                sync=not no_sync,
                repo_dir=repo_dir,
            ),
        ),
    )


@ivan.command("address")
@click.argument("pr_numbers", nargs=-1, type=click.IntRange(min=1))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--author",
    default=None,
    help="Without PR numbers, only scan open PRs opened by this GitHub login.",
)
@click.option(
    "--include-checks",
    is_flag=True,
    help="Also create one task per branch for failing test and lint checks.",
)
@click.option("--no-sync", is_flag=True, help="Skip syncing the original checkout first.")
@click.option(
    "--repo",
    "repo_dir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Git clone to work in. Defaults to the current directory.",
)
def address(
    pr_numbers: tuple[int, ...],
    db_path: Path | None,
    author: str | None,
    include_checks: bool,
    no_sync: bool,
    repo_dir: Path | None,
) -> None:
    """Address unresolved review comments on the given pull requests.

    Without PR numbers every open PR (optionally filtered by `--author`) is scanned.
    """

    _emit_lines(
        _invoke(
            ORCHESTRATOR_CONTROLLER.address,
            AddressCommand(
                db_path=db_path,
                pr_numbers=pr_numbers,
                author=author,
                include_checks=include_checks,
                sync=not no_sync,
                repo_dir=repo_dir,
            ),
        ),
    )


@ivan.command("jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many recent jobs to show.",
)
def jobs(db_path: Path | None, limit: int) -> None:
    """List recent jobs with task progress."""

    _emit_lines(
        _invoke(ORCHESTRATOR_CONTROLLER.list_jobs, ListJobsCommand(db_path=db_path, limit=limit)),
    )


@ivan.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", type=int, default=None, help="Only tasks of this job.")
@click.option(
    "--status",
    type=click.Choice(["not_started", "active", "completed"], case_sensitive=False),
    default=None,
    help="Filter by task status.",
)
@click.option(
    "--retry-eligible",
    is_flag=True,
    help="Only tasks that failed and were reverted to not_started.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum number of tasks to show.",
)
def tasks(
    db_path: Path | None,
    job_id: int | None,
    status: str | None,
    retry_eligible: bool,
    limit: int,
) -> None:
    """List tasks."""

    _emit_lines(
        _invoke(
            ORCHESTRATOR_CONTROLLER.list_tasks,
            ListTasksCommand(
                db_path=db_path,
                job_id=job_id,
                status=status,
                retry_eligible=retry_eligible,
                limit=limit,
            ),
        ),
    )


@ivan.command("retry")
@click.argument("job_id", type=int)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--single-pr", is_flag=True, help="Re-run build tasks on one branch.")
@click.option(
    "--repo",
    "repo_dir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Git clone to work in. Defaults to the job's working directory.",
)
def retry(job_id: int, db_path: Path | None, single_pr: bool, repo_dir: Path | None) -> None:
    """Re-run the retry-eligible tasks of `JOB_ID`."""

    _emit_lines(
        _invoke(
            ORCHESTRATOR_CONTROLLER.retry,
            RetryCommand(db_path=db_path, job_id=job_id, single_pr=single_pr, repo_dir=repo_dir),
        ),
    )


def _invoke(handler: Callable[[Any], list[str]], command: object) -> list[str]:
    try:
        return handler(command)
    except (IvanError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ivan()
