"""
Prompt loader.

Templates live in ``storyflow/prompts/<name>.md`` and use str.format()
placeholders: {variable_name}. Use {{ and }} for literal braces (e.g. JSON
examples). HTML comments are stripped before rendering so templates can
carry notes that are never sent to the model.
"""

import logging
import re
from functools import lru_cache
from pathlib import Path

from storyflow.lib.errors import StoryflowError

logger = logging.getLogger(__name__)

__all__ = ["PromptError", "load_prompt", "render_prompt", "build_section", "clear_cache", "PROMPTS_DIR"]

_HTML_COMMENT_PATTERN = re.compile(r"<!--.*?-->\s*", re.DOTALL)

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"


class PromptError(StoryflowError):
    category = "prompt_error"


@lru_cache(maxsize=16)
def load_prompt(name: str) -> str:
    """Load a prompt template by name (cached), HTML comments removed."""
    prompt_path = PROMPTS_DIR / f"{name}.md"
    if not prompt_path.exists():
        raise PromptError(f"Prompt template '{name}' not found. Expected file: {prompt_path}")

    logger.debug(f"Loading prompt template: {name}")
    content = _HTML_COMMENT_PATTERN.sub("", prompt_path.read_text())
    return content.lstrip()


def render_prompt(name: str, **kwargs) -> str:
    """
    Load and render a prompt template.

    Raises:
        PromptError: If the template is missing or a placeholder has no value
    """
    template = load_prompt(name)
    try:
        return template.format(**kwargs)
    except KeyError as e:
        raise PromptError(
            f"Missing required variable {e} in prompt '{name}'. "
            f"Provided: {list(kwargs.keys())}"
        ) from e


def build_section(content: str | None, header: str, empty_msg: str | None = None) -> str:
    """Markdown section for optional content; empty string when there is nothing to say."""
    if content:
        return f"{header}\n\n{content}\n"
    if empty_msg is not None:
        return f"{header}\n\n{empty_msg}\n"
    return ""


def clear_cache():
    load_prompt.cache_clear()
