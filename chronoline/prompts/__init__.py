"""Prompt templates for the timeline session controller.

Each hidden prompt turn is a Markdown file in this directory rendered
with Jinja2. Templates are strict: a variable the template uses but the
caller did not pass raises instead of rendering as an empty string.
"""

from __future__ import annotations

from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound

# Directory containing the .md prompt template files
_PROMPTS_DIR = Path(__file__).parent

_ENV = Environment(
    loader=FileSystemLoader(_PROMPTS_DIR),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


def prompt_names() -> list[str]:
    """Names of the available templates, without the .md extension."""
    return sorted(path.stem for path in _PROMPTS_DIR.glob("*.md"))


def render_prompt(template_name: str, **variables: object) -> str:
    """Render the prompt template ``template_name`` with ``variables``.

    Raises:
        FileNotFoundError: If there is no ``<template_name>.md``.
        jinja2.UndefinedError: If the template needs a variable that was
                               not passed.
    """
    try:
        template = _ENV.get_template(f"{template_name}.md")
    except TemplateNotFound:
        raise FileNotFoundError(
            f"Prompt template not found: {_PROMPTS_DIR / template_name}.md"
        ) from None
    return template.render(**variables)
