"""
Agent command configuration.

Loads ``agents.yaml`` from the project directory to decide which CLI command
the AI provider runs for each stage. Without the file the defaults below
are used.

Example agents.yaml:

    stages:
      implement: claude -p --output-format json --model opus
      refine: my-agent --json {prompt}

Templates may reference ``{prompt}``, ``{workspace}`` and ``{session_id}``.
When ``{prompt}`` is absent the prompt is written to the command's stdin.
"""

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from storyflow.lib.errors import ConfigError

logger = logging.getLogger(__name__)

AGENTS_YAML = "agents.yaml"

DEFAULT_STAGE_COMMANDS = {
    # Work item -> free-form analysis (first refinement turn)
    "refine_analysis": "claude -p --output-format json",

    # Analysis -> developer stories + dependencies JSON (second turn)
    "refine": "claude -p --output-format json",

    # Developer story -> code changes, run inside the story's worktree
    "implement": "claude -p --output-format json --permission-mode acceptEdits",
}

STAGE_REQUIRED_VARIABLES = {
    "implement": ["workspace"],
}

_PLACEHOLDER = "__PROMPT_PLACEHOLDER__"


@dataclass
class AgentsConfig:
    """Agent configuration from agents.yaml."""
    stages: dict[str, str] = field(default_factory=lambda: DEFAULT_STAGE_COMMANDS.copy())


def load_agents_config(project_dir: Optional[Path]) -> AgentsConfig:
    """Load agents.yaml and return AgentsConfig.

    Raises:
        ConfigError: If the file exists but is not valid YAML or maps a
            stage to something other than a command string.
    """
    if project_dir is None:
        return AgentsConfig()

    config_path = Path(project_dir) / AGENTS_YAML
    if not config_path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {config_path}: {e}") from e

    stages = DEFAULT_STAGE_COMMANDS.copy()
    overrides = (data or {}).get("stages") or {}
    if not isinstance(overrides, dict):
        raise ConfigError(f"{config_path}: 'stages' must be a mapping")
    for stage, command in overrides.items():
        if not isinstance(command, str) or not command.strip():
            raise ConfigError(f"{config_path}: stage '{stage}' must be a non-empty command string")
        if stage not in DEFAULT_STAGE_COMMANDS:
            logger.warning(f"{config_path}: ignoring unknown stage '{stage}'")
            continue
        stages[stage] = command
    return AgentsConfig(stages=stages)


@dataclass
class StageCommand:
    """A stage command ready for subprocess."""
    cmd: list[str]
    prompt_via_stdin: bool
    output_format: str | None  # "json" if --output-format json, else None

    def get_stdin_input(self, prompt: str) -> str | None:
        return prompt if self.prompt_via_stdin else None


def _detect_output_format(parts: list[str]) -> str | None:
    for i, part in enumerate(parts):
        if part == "--output-format" and i + 1 < len(parts):
            return parts[i + 1]
        if part.startswith("--output-format="):
            return part.split("=", 1)[1]
    return None


def get_stage_command(
    config: AgentsConfig,
    stage: str,
    context: dict[str, str] | None = None,
) -> StageCommand:
    """Build the command list for a stage with variable substitution.

    ``{prompt}`` is substituted after shell-splitting so prompt text is
    always a single argument, whatever quotes it contains.

    Raises:
        ValueError: If the stage is unknown or a required variable is missing.
    """
    if stage not in config.stages:
        raise ValueError(f"Unknown stage: {stage}")

    context = context or {}
    missing = [v for v in STAGE_REQUIRED_VARIABLES.get(stage, []) if v not in context]
    if missing:
        raise ValueError(f"Stage '{stage}' requires variables {missing} in context")

    template = config.stages[stage]
    prompt_via_stdin = "{prompt}" not in template
    template = template.replace("{prompt}", _PLACEHOLDER)

    for key, value in context.items():
        if key != "prompt":
            template = template.replace(f"{{{key}}}", shlex.quote(str(value)))

    remaining = re.findall(r"\{(\w+)\}", template)
    if remaining:
        raise ValueError(f"Stage '{stage}' has unsubstituted variables: {remaining}")

    cmd = shlex.split(template)
    prompt = context.get("prompt")
    if prompt is not None:
        cmd = [prompt if arg == _PLACEHOLDER else arg for arg in cmd]

    return StageCommand(
        cmd=cmd,
        prompt_via_stdin=prompt_via_stdin,
        output_format=_detect_output_format(cmd),
    )

