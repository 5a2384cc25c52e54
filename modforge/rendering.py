"""Jinja2 environment for generated PowerShell text."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from .powershell.data import dumps, quote

_TEMPLATES_DIR = Path(__file__).with_name("templates")


@lru_cache(maxsize=None)
def create_environment(templates_dir: Path | None = None) -> Environment:
    """Return an environment searching ``templates_dir`` before the bundled templates."""
    directories = []
    if templates_dir is not None:
        directories.append(str(templates_dir))
    directories.append(str(_TEMPLATES_DIR))
    loader = FileSystemLoader(directories)
    env = Environment(
        loader=loader,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["psquote"] = quote
    env.filters["psdata"] = dumps
    return env


def render(template_name: str, **context: object) -> str:
    return create_environment().get_template(template_name).render(**context)


__all__ = ["create_environment", "render"]
