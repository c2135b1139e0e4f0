"""
Command-line AI provider.

Runs the command configured in agents.yaml for each stage (``claude -p``
by default). The prompt is rendered from ``storyflow/prompts`` and passed
on stdin unless the command template places ``{prompt}`` itself.
"""

import json
import logging
import os
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Optional

from storyflow.agents.provider import ProviderRequest, ProviderResponse
from storyflow.lib.agents_config import AgentsConfig, get_stage_command
from storyflow.lib.errors import Cancelled
from storyflow.lib.prompts import build_section, render_prompt

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_PATTERN = re.compile(
    r"rate.?limit|overloaded|\b429\b|\b529\b|timed? ?out|connection (reset|refused)"
    r"|temporarily unavailable",
    re.IGNORECASE,
)


def is_transient_error(message: str) -> bool:
    return bool(TRANSIENT_ERROR_PATTERN.search(message or ""))


class ClaudeCliProvider:
    def __init__(self, agents_config: AgentsConfig, timeout: int = 1800, poll_interval: float = 0.2):
        self.agents_config = agents_config
        self.timeout = timeout
        self.poll_interval = poll_interval

    def refine_analysis(self, request: ProviderRequest, cancel_event: threading.Event) -> ProviderResponse:
        prompt = render_prompt(
            "refine_analysis",
            context=request.context,
            instructions=request.instructions,
        )
        return self._run("refine_analysis", prompt, request, cancel_event)

    def refine(self, request: ProviderRequest, cancel_event: threading.Event) -> ProviderResponse:
        prompt = render_prompt(
            "refine",
            context=request.context,
            instructions=request.instructions,
            prior_analysis=build_section(request.prior_analysis, "## Analysis"),
        )
        return self._run("refine", prompt, request, cancel_event)

    def implement(self, request: ProviderRequest, cancel_event: threading.Event) -> ProviderResponse:
        prompt = render_prompt(
            "implement",
            context=request.context,
            instructions=request.instructions,
            workspace=str(request.workspace),
        )
        return self._run("implement", prompt, request, cancel_event)

    def _run(
        self,
        stage: str,
        prompt: str,
        request: ProviderRequest,
        cancel_event: threading.Event,
    ) -> ProviderResponse:
        context = {"prompt": prompt}
        if request.workspace is not None:
            context["workspace"] = str(request.workspace)
        if request.session_id:
            context["session_id"] = request.session_id
        stage_cmd = get_stage_command(self.agents_config, stage, context)
        cwd: Optional[Path] = request.workspace

        # Remove ANTHROPIC_API_KEY so the CLI uses its own login
        env = {k: v for k, v in os.environ.items() if k != "ANTHROPIC_API_KEY"}

        logger.info(f"[AI] {stage}: running {stage_cmd.cmd[0]}" + (f" in {cwd}" if cwd else ""))
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                stage_cmd.cmd,
                cwd=str(cwd) if cwd else None,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
            )
        except FileNotFoundError:
            return ProviderResponse(
                success=False,
                error=f"{stage_cmd.cmd[0]} not found on PATH (configure agents.yaml)",
            )

        stdin_input = stage_cmd.get_stdin_input(prompt)
        while True:
            try:
                stdout, stderr = proc.communicate(input=stdin_input, timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                # Input was handed over on the first call; later polls only wait
                stdin_input = None
                if cancel_event.is_set():
                    self._kill(proc)
                    logger.info(f"[AI] {stage}: cancelled")
                    raise Cancelled()
                if time.monotonic() - started > self.timeout:
                    self._kill(proc)
                    return ProviderResponse(
                        success=False,
                        error=f"{stage} timed out after {self.timeout}s",
                        transient=True,
                        duration=time.monotonic() - started,
                    )

        duration = time.monotonic() - started
        if proc.returncode != 0:
            error = stderr.strip() or stdout.strip() or f"exit code {proc.returncode}"
            return ProviderResponse(
                success=False,
                output=stdout,
                error=f"{stage} failed (exit {proc.returncode}): {error}",
                transient=is_transient_error(error),
                duration=duration,
            )

        return self._parse_output(stage, stdout, stage_cmd.output_format, duration)

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        proc.kill()
        proc.communicate()

    @staticmethod
    def _parse_output(stage: str, stdout: str, output_format: Optional[str], duration: float) -> ProviderResponse:
        if output_format != "json":
            return ProviderResponse(success=True, output=stdout, duration=duration)

        # --output-format json wraps the reply: {"type": "result", "result": "...", "session_id": ...}
        try:
            wrapper = json.loads(stdout.strip())
        except json.JSONDecodeError:
            return ProviderResponse(success=True, output=stdout, duration=duration)
        if not isinstance(wrapper, dict):
            return ProviderResponse(success=True, output=stdout, duration=duration)

        result = wrapper.get("result", "")
        if not isinstance(result, str):
            result = json.dumps(result)
        if wrapper.get("is_error"):
            return ProviderResponse(
                success=False,
                output=result,
                error=f"{stage} reported an error: {result}",
                transient=is_transient_error(result),
                session_id=wrapper.get("session_id"),
                duration=duration,
            )
        return ProviderResponse(
            success=True,
            output=result,
            session_id=wrapper.get("session_id"),
            duration=duration,
        )
