"""
KEY=value parser for project.env.

Values are taken literally; nothing is expanded or executed. Lines that
look like shell (substitution, chaining, pipes) are refused outright so a
copied shell profile cannot be mistaken for configuration.
"""

import re
from pathlib import Path

SHELL_CONSTRUCTS = re.compile(r"`|\$\(|\$\{|;|&&|\|")
KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")


class EnvSyntaxError(ValueError):
    def __init__(self, path: Path, lineno: int, message: str):
        self.path = path
        self.lineno = lineno
        super().__init__(f"{path.name}:{lineno}: {message}")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    # Unquoted values may carry a trailing comment
    if " #" in value:
        value = value.split(" #", 1)[0].rstrip()
    return value


def parse_env(text: str, path: Path = Path("<string>")) -> dict[str, str]:
    """Parse env-file text into a dict. Later keys override earlier ones."""
    result: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()

        key, sep, value = line.partition("=")
        if not sep:
            raise EnvSyntaxError(path, lineno, "expected KEY=value")
        key = key.strip()
        if not KEY_PATTERN.match(key):
            raise EnvSyntaxError(path, lineno, f"invalid key '{key}'")

        value = _unquote(value.strip())
        if SHELL_CONSTRUCTS.search(value):
            raise EnvSyntaxError(path, lineno, f"shell syntax is not allowed in {key}")
        result[key] = value
    return result


def load_env(filepath) -> dict[str, str]:
    """
    Read and parse an env file.

    Raises:
        FileNotFoundError: if the file doesn't exist
        EnvSyntaxError: on a malformed line
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Env file not found: {path}")
    return parse_env(path.read_text(), path)
