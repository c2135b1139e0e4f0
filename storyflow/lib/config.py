"""
Project configuration.

Settings come from ``project.env`` in the project directory. The file is
optional; without it the project directory itself is treated as the
repository and every setting takes its default.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from . import envparse
from .errors import ConfigError

logger = logging.getLogger(__name__)

PROJECT_ENV = "project.env"
DEFAULT_STATE_DIR = ".storyflow"


@dataclass
class ProjectConfig:
    """Project-level configuration from project.env"""
    name: str
    project_dir: Path
    repo_path: Path
    base_branch: str
    state_dir: Path
    worktree_root: Path
    max_ai_retries: int = 3
    retry_base_delay: float = 5.0
    max_retry_delay: float = 300.0
    max_story_attempts: int = 3
    ai_timeout: int = 1800
    workers: int = 2
    poll_interval: float = 2.0
    lock_timeout: float = 60.0

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / "locks"


def _resolve(project_dir: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = project_dir / path
    return path.resolve()


def _int(env: dict, key: str, default: int, minimum: int = 0) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got '{raw}'")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _float(env: dict, key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got '{raw}'")
    if value < 0:
        raise ConfigError(f"{key} must not be negative, got {value}")
    return value


def load_project_config(project_dir: Path) -> ProjectConfig:
    """Load project.env and return ProjectConfig."""
    project_dir = Path(project_dir).resolve()
    env_file = project_dir / PROJECT_ENV
    env: dict[str, str] = {}
    if env_file.exists():
        try:
            env = envparse.load_env(env_file)
        except ValueError as e:
            raise ConfigError(str(e)) from e
    else:
        logger.debug(f"No {PROJECT_ENV} in {project_dir}, using defaults")

    repo_path = _resolve(project_dir, env.get("REPO_PATH", "."))
    state_dir = _resolve(project_dir, env.get("STATE_DIR", DEFAULT_STATE_DIR))
    worktree_root = (
        _resolve(project_dir, env["WORKTREE_ROOT"])
        if env.get("WORKTREE_ROOT")
        else repo_path.parent / f"{repo_path.name}-worktrees"
    )

    return ProjectConfig(
        name=env.get("PROJECT_NAME", project_dir.name),
        project_dir=project_dir,
        repo_path=repo_path,
        base_branch=env.get("BASE_BRANCH", "main"),
        state_dir=state_dir,
        worktree_root=worktree_root,
        max_ai_retries=_int(env, "MAX_AI_RETRIES", 3),
        retry_base_delay=_float(env, "RETRY_BASE_DELAY", 5.0),
        max_retry_delay=_float(env, "MAX_RETRY_DELAY", 300.0),
        max_story_attempts=_int(env, "MAX_STORY_ATTEMPTS", 3, minimum=1),
        ai_timeout=_int(env, "AI_TIMEOUT", 1800, minimum=1),
        workers=_int(env, "WORKERS", 2, minimum=1),
        poll_interval=_float(env, "POLL_INTERVAL", 2.0),
        lock_timeout=_float(env, "LOCK_TIMEOUT", 60.0),
    )
