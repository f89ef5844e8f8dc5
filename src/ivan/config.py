"""Runtime configuration for the orchestrator, agent and code host."""

from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

EXECUTOR_TYPES = ("sdk", "cli")
GITHUB_AUTH_TYPES = ("gh", "pat")
DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_HOME = Path("~/.ivan")


@dataclass(slots=True)
class AgentSettings:
    """Coding agent backend settings."""

    executor_type: str = "sdk"
    model: str = DEFAULT_CLAUDE_MODEL
    command: tuple[str, ...] = ("claude",)


@dataclass(slots=True)
class GitHubSettings:
    """Code host access settings."""

    auth_type: str = "gh"
    token: str = ""
    api_url: str = "https://api.github.com"
    request_timeout_seconds: float = 60.0
    max_retries: int = 3


@dataclass(slots=True)
class ReviewSettings:
    """Review follow-up settings."""

    agent: str = "@codex"
    wait_seconds: int = 1_800


@dataclass(slots=True)
class WorktreeSettings:
    """Isolated checkout settings."""

    suffix: str = "ivan"
    install_dependencies: bool = True


@dataclass(slots=True)
class TextSettings:
    """Commit message / PR description generator settings."""

    openai_api_key: str = ""
    model: str = "gpt-4o-mini"
    api_url: str = "https://api.openai.com/v1"
    request_timeout_seconds: float = 60.0


@dataclass(slots=True)
class RepoSettings:
    """Per-repository overrides keyed by the absolute path of the original checkout."""

    instructions: dict[str, str] = field(default_factory=dict)
    allowed_tools: dict[str, list[str]] = field(default_factory=dict)

    def instructions_for(self, repo_dir: Path) -> str | None:
        value = self.instructions.get(str(repo_dir.resolve()), "").strip()
        return value or None

    def allowed_tools_for(self, repo_dir: Path) -> list[str] | None:
        return self.allowed_tools.get(str(repo_dir.resolve()))


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = DEFAULT_HOME / "db.sqlite"
    log_level: str = "INFO"
    agent: AgentSettings = field(default_factory=AgentSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)
    review: ReviewSettings = field(default_factory=ReviewSettings)
    worktree: WorktreeSettings = field(default_factory=WorktreeSettings)
    text: TextSettings = field(default_factory=TextSettings)
    repos: RepoSettings = field(default_factory=RepoSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment and the optional JSON config file."""

        config_path = Path(
            os.getenv("IVAN_CONFIG_PATH", str(DEFAULT_HOME / "config.json")),
        ).expanduser()
        file_config = _load_config_file(config_path)
        return cls(
            db_path=(
                db_path or Path(os.getenv("IVAN_DB_PATH", str(DEFAULT_HOME / "db.sqlite")))
            ).expanduser(),
            log_level=os.getenv("IVAN_LOG_LEVEL", "INFO").upper(),
            agent=AgentSettings(
                executor_type=os.getenv(
                    "IVAN_EXECUTOR_TYPE",
                    str(file_config.get("executor_type", "sdk")),
                ).strip(),
                model=os.getenv(
                    "IVAN_CLAUDE_MODEL",
                    str(file_config.get("claude_model", DEFAULT_CLAUDE_MODEL)),
                ),
                command=tuple(shlex.split(os.getenv("IVAN_CLAUDE_COMMAND", "claude"))),
            ),
            github=GitHubSettings(
                auth_type=os.getenv(
                    "IVAN_GITHUB_AUTH_TYPE",
                    str(file_config.get("github_auth_type", "gh")),
                ).strip(),
                token=os.getenv("IVAN_GITHUB_TOKEN", os.getenv("GITHUB_TOKEN", "")),
                api_url=os.getenv("IVAN_GITHUB_API_URL", "https://api.github.com").rstrip("/"),
                request_timeout_seconds=float(os.getenv("IVAN_GITHUB_TIMEOUT_SECONDS", "60")),
                max_retries=int(os.getenv("IVAN_GITHUB_MAX_RETRIES", "3")),
            ),
            review=ReviewSettings(
                agent=os.getenv(
                    "IVAN_REVIEW_AGENT",
                    str(file_config.get("review_agent", "@codex")),
                ),
                wait_seconds=int(os.getenv("IVAN_REVIEW_WAIT_SECONDS", "1800")),
            ),
            worktree=WorktreeSettings(
                suffix=os.getenv("IVAN_WORKTREE_SUFFIX", "ivan"),
                install_dependencies=_env_bool("IVAN_INSTALL_DEPENDENCIES", default=True),
            ),
            text=TextSettings(
                openai_api_key=os.getenv(
                    "OPENAI_API_KEY",
                    str(file_config.get("openai_api_key", "")),
                ),
                model=os.getenv("IVAN_TEXT_MODEL", "gpt-4o-mini"),
                api_url=os.getenv("IVAN_TEXT_API_URL", "https://api.openai.com/v1").rstrip("/"),
            ),
            repos=RepoSettings(
                instructions=_string_map(file_config.get("repo_instructions")),
                allowed_tools=_tools_map(file_config.get("repo_allowed_tools")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for unsupported or incomplete settings."""

        if self.agent.executor_type not in EXECUTOR_TYPES:
            raise ValueError(
                f"IVAN_EXECUTOR_TYPE must be one of {', '.join(EXECUTOR_TYPES)}; "
                f"got {self.agent.executor_type!r}.",
            )
        if not self.agent.command:
            raise ValueError("IVAN_CLAUDE_COMMAND must not be empty.")
        if self.github.auth_type not in GITHUB_AUTH_TYPES:
            raise ValueError(
                f"IVAN_GITHUB_AUTH_TYPE must be one of {', '.join(GITHUB_AUTH_TYPES)}; "
                f"got {self.github.auth_type!r}.",
            )
        if self.github.auth_type == "pat" and not self.github.token:
            raise ValueError(
                "A GitHub token is required for PAT auth. Set IVAN_GITHUB_TOKEN or GITHUB_TOKEN.",
            )
        if self.review.wait_seconds < 0:
            raise ValueError("IVAN_REVIEW_WAIT_SECONDS must be >= 0.")
        if not self.worktree.suffix.strip():
            raise ValueError("IVAN_WORKTREE_SUFFIX must not be empty.")


def _load_config_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid JSON in config file {path}: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"Config file {path} must contain a JSON object.")
    return payload


def _string_map(raw: object) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {
        str(Path(key).expanduser().resolve()): str(value)
        for key, value in raw.items()
        if isinstance(value, str)
    }


def _tools_map(raw: object) -> dict[str, list[str]]:
    if not isinstance(raw, dict):
        return {}
    tools: dict[str, list[str]] = {}
    for key, value in raw.items():
        if isinstance(value, str):
            items = [part.strip() for part in value.split(",")]
        elif isinstance(value, list):
            items = [str(part).strip() for part in value]
        else:
            continue
        tools[str(Path(key).expanduser().resolve())] = [item for item in items if item]
    return tools


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
