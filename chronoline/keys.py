"""API keys for model providers.

LiteLLM reads provider keys from the environment. Before the server
starts, unset ones are filled in from, in order:
  1. ~/.chronoline/keys.env
  2. .env in the current directory
A variable that already has a value is never overwritten.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

CHRONOLINE_HOME = Path.home() / ".chronoline"
KEYS_FILE = CHRONOLINE_HOME / "keys.env"


def parse_env_file(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines.

    Blank lines, comments and lines without ``=`` are skipped. A leading
    ``export`` and quotes around the value are stripped.
    """
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        name, sep, value = line.partition("=")
        name = name.strip()
        if not sep or not name or name.startswith("#"):
            continue
        values[name] = value.strip().strip("'\"")
    return values


def load_keys_env() -> list[str]:
    """Fill unset environment variables from keys.env and ./.env.

    Returns:
        Names of the variables that were set.
    """
    loaded: list[str] = []
    for path in (KEYS_FILE, Path.cwd() / ".env"):
        if not path.is_file():
            continue
        try:
            values = parse_env_file(path.read_text(encoding="utf-8"))
        except OSError:
            logger.debug("Could not read %s", path)
            continue
        for name, value in values.items():
            if os.environ.get(name):
                continue
            os.environ[name] = value
            loaded.append(name)
            logger.debug("Loaded %s from %s", name, path)
    return loaded


def missing_keys(env_vars: list[str]) -> list[str]:
    """Return the names in ``env_vars`` that are unset or empty, without repeats."""
    return [name for name in dict.fromkeys(env_vars) if not os.environ.get(name)]
