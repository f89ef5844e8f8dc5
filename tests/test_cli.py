from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import FakeCodeHost, GitRepo, ScriptedExecutor, make_thread, say, write_file

import ivan.main as main_module
from ivan.orchestrator.controllers import OrchestratorCliController
from ivan.orchestrator.errors import ExecutionFailed

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("ivan CLI"),
]

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


def _use_controller(monkeypatch, executor, host: FakeCodeHost) -> None:
    controller = OrchestratorCliController(
        executor_factory=lambda settings, cancel_token=None: executor,
        host_factory=lambda settings, root: host,
        sleeper=lambda seconds: None,
    )
    monkeypatch.setattr(main_module, "ORCHESTRATOR_CONTROLLER", controller)


def _fail(message: str):
    def _action(_prompt: str, _working_dir: Path) -> str | None:
        raise ExecutionFailed(message)

    return _action


def test_jobs_and_tasks_on_empty_database(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = str(tmp_path / "ivan.db")

    jobs = runner.invoke(main_module.ivan, ["jobs", "--db-path", db_path])
    tasks = runner.invoke(main_module.ivan, ["tasks", "--db-path", db_path])

    assert jobs.exit_code == 0, jobs.output
    assert jobs.output.strip() == "No jobs."
    assert tasks.exit_code == 0, tasks.output
    assert tasks.output.strip() == "No tasks."


def test_run_with_echo_agent_breakdown(
    monkeypatch,
    git_repo: GitRepo,
    fake_host: FakeCodeHost,
    tmp_path: Path,
) -> None:
    command = shlex.join([sys.executable, "-m", "ivan.orchestrator.backend.echo_agent"])
    monkeypatch.setenv("IVAN_CLAUDE_COMMAND", command)
    monkeypatch.setenv("PYTHONPATH", str(SRC_DIR))
    controller = OrchestratorCliController(host_factory=lambda settings, root: fake_host)
    monkeypatch.setattr(main_module, "ORCHESTRATOR_CONTROLLER", controller)
    db_path = str(tmp_path / "ivan.db")
    runner = CliRunner()

    result = runner.invoke(
        main_module.ivan,
        ["run", "Add a feature", "--db-path", db_path, "--repo", str(git_repo.clone)],
    )

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert "Job created: job_id=1 tasks=2" in lines
    assert "  [1] build: Add feature" in lines
    assert "  [2] build: Write tests" in lines
    assert "Run summary: processed=2 completed=2 failed=0 unchanged=2 replies=0" in lines

    listing = runner.invoke(main_module.ivan, ["jobs", "--db-path", db_path])
    assert listing.exit_code == 0, listing.output
    assert listing.output.startswith("job_id=1 tasks=2/2 ")
    assert "description=Add a feature" in listing.output


def test_run_with_explicit_tasks_opens_pull_request(
    monkeypatch,
    git_repo: GitRepo,
    fake_host: FakeCodeHost,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor(actions=[write_file("NOTES.md", "notes\n")])
    _use_controller(monkeypatch, executor, fake_host)
    db_path = str(tmp_path / "ivan.db")

    result = CliRunner().invoke(
        main_module.ivan,
        [
            "run",
            "Document the project",
            "--task",
            "Add notes",
            "--no-sync",
            "--db-path",
            db_path,
            "--repo",
            str(git_repo.clone),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Job created: job_id=1 tasks=1" in result.output
    assert "Pull request: https://github.com/acme/widgets/pull/1" in result.output
    assert [call[0] for call in executor.calls] == ["Add notes"]


def test_failed_run_then_retry(
    monkeypatch,
    git_repo: GitRepo,
    fake_host: FakeCodeHost,
    tmp_path: Path,
) -> None:
    executor = ScriptedExecutor(actions=[_fail("Agent exited with code 1")])
    _use_controller(monkeypatch, executor, fake_host)
    db_path = str(tmp_path / "ivan.db")
    runner = CliRunner()
    repo = str(git_repo.clone)

    first = runner.invoke(
        main_module.ivan,
        ["run", "Add notes", "--task", "Add notes", "--db-path", db_path, "--repo", repo],
    )
    assert first.exit_code == 0, first.output
    assert "failed=1" in first.output
    assert "ivan retry <job_id>" in first.output

    eligible = runner.invoke(main_module.ivan, ["tasks", "--retry-eligible", "--db-path", db_path])
    assert eligible.exit_code == 0, eligible.output
    assert "retry=yes" in eligible.output
    assert "status=not_started" in eligible.output

    executor.actions.append(write_file("NOTES.md", "notes\n"))
    retried = runner.invoke(main_module.ivan, ["retry", "1", "--db-path", db_path, "--repo", repo])
    assert retried.exit_code == 0, retried.output
    assert "Retrying 1 task(s) of job 1" in retried.output
    assert "Pull request: https://github.com/acme/widgets/pull/1" in retried.output

    again = runner.invoke(main_module.ivan, ["retry", "1", "--db-path", db_path])
    assert again.output.strip() == "Job 1 has no retry-eligible tasks."

    completed = runner.invoke(
        main_module.ivan,
        ["tasks", "--status", "completed", "--db-path", db_path],
    )
    assert "retry=no" in completed.output
    assert "pr=https://github.com/acme/widgets/pull/1" in completed.output


def test_address_replies_to_review_comments(
    monkeypatch,
    git_repo: GitRepo,
    fake_host: FakeCodeHost,
    tmp_path: Path,
) -> None:
    git_repo.git("push", "origin", "main:feature/rename")
    fake_host.add_pull_request(12, "feature/rename")
    fake_host.threads[12] = [make_thread("T1", "101", body="Typo: Teh")]
    executor = ScriptedExecutor(
        actions=[write_file("README.md", "# widgets\n\nThe widget library.\n", "Fixed")],
    )
    _use_controller(monkeypatch, executor, fake_host)

    result = CliRunner().invoke(
        main_module.ivan,
        ["address", "12", "--db-path", str(tmp_path / "ivan.db"), "--repo", str(git_repo.clone)],
    )

    assert result.exit_code == 0, result.output
    assert "  [1] address: Address PR #12 comment from @reviewer" in result.output
    assert "Run summary: processed=1 completed=1 failed=0 unchanged=0 replies=1" in result.output
    ((thread_id, body),) = fake_host.replies
    assert thread_id == "T1"
    assert body.startswith("Ivan: Fixed")


def test_address_without_numbers_scans_open_pull_requests(
    monkeypatch,
    git_repo: GitRepo,
    fake_host: FakeCodeHost,
    tmp_path: Path,
) -> None:
    git_repo.git("push", "origin", "main:feature/rename")
    fake_host.add_pull_request(12, "feature/rename")
    fake_host.add_pull_request(13, "feature/quiet")
    fake_host.threads[12] = [make_thread("T1", "101", body="Typo: Teh")]
    executor = ScriptedExecutor(actions=[say("Looks fine as is")])
    _use_controller(monkeypatch, executor, fake_host)
    db_path = str(tmp_path / "ivan.db")
    repo = str(git_repo.clone)

    result = CliRunner().invoke(
        main_module.ivan,
        ["address", "--author", "octocat", "--no-sync", "--db-path", db_path, "--repo", repo],
    )

    assert result.exit_code == 0, result.output
    assert "Job created: job_id=1 tasks=1" in result.output
    assert "  [1] address: Address PR #12 comment from @reviewer" in result.output
    assert fake_host.replies == [("T1", "Ivan: Looks fine as is")]

    listing = CliRunner().invoke(main_module.ivan, ["jobs", "--db-path", db_path])
    assert "description=Address review feedback on open PRs by @octocat" in listing.output

    nobody = CliRunner().invoke(
        main_module.ivan,
        ["address", "--author", "someone", "--no-sync", "--db-path", db_path, "--repo", repo],
    )
    assert nobody.exit_code == 0, nobody.output
    assert nobody.output.splitlines()[-1] == "Nothing to address."


def test_address_with_nothing_to_do(
    monkeypatch,
    git_repo: GitRepo,
    fake_host: FakeCodeHost,
    tmp_path: Path,
) -> None:
    fake_host.add_pull_request(3, "feature/clean")
    _use_controller(monkeypatch, ScriptedExecutor(), fake_host)

    result = CliRunner().invoke(
        main_module.ivan,
        [
            "address",
            "3",
            "--include-checks",
            "--no-sync",
            "--db-path",
            str(tmp_path / "ivan.db"),
            "--repo",
            str(git_repo.clone),
        ],
    )

    assert result.exit_code == 0, result.output
    assert result.output.splitlines()[-1] == "Nothing to address."


def test_unauthenticated_host_aborts(
    monkeypatch,
    git_repo: GitRepo,
    tmp_path: Path,
) -> None:
    _use_controller(monkeypatch, ScriptedExecutor(), FakeCodeHost(authenticated=False))

    args = ["run", "x", "--task", "x", "--db-path", str(tmp_path / "i.db")]

    result = CliRunner().invoke(main_module.ivan, [*args, "--repo", str(git_repo.clone)])

    assert result.exit_code == 1
    assert "not logged in" in result.output


@pytest.mark.parametrize(
    ("args", "message"),
    [
        (["retry", "99"], "Job not found: 99"),
        (["tasks", "--status", "failed"], "--status"),
    ],
)
def test_bad_input_is_reported(tmp_path: Path, args: list[str], message: str) -> None:
    result = CliRunner().invoke(main_module.ivan, [*args, "--db-path", str(tmp_path / "ivan.db")])

    assert result.exit_code != 0
    assert message in result.output


def test_invalid_settings_are_reported(monkeypatch, git_repo: GitRepo, tmp_path: Path) -> None:
    monkeypatch.setenv("IVAN_EXECUTOR_TYPE", "api")

    result = CliRunner().invoke(
        main_module.ivan,
        ["run", "x", "--db-path", str(tmp_path / "ivan.db"), "--repo", str(git_repo.clone)],
    )

    assert result.exit_code == 1
    assert "IVAN_EXECUTOR_TYPE must be one of" in result.output
