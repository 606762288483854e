"""Jinja2 template rendering for generated service definitions."""
from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateNotFound,
    UndefinedError,
)


class TemplateError(RuntimeError):
    """Raised when a template cannot be located or rendered."""


def _quote(value: object) -> str:
    """Quote *value* as a JSON string, which is also a valid YAML scalar."""
    return json.dumps(str(value), ensure_ascii=False)


class TemplateEngine:
    """Render packaged templates, optionally shadowed by an override directory."""

    def __init__(self, environment: Environment) -> None:
        """Wrap a configured Jinja2 environment."""
        self._environment = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and override_dir.is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("dockhand", "data/templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        environment.filters["quote"] = _quote
        return cls(environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        try:
            template = self._environment.get_template(template_name)
        except TemplateNotFound as exc:
            raise TemplateError(f"Template '{template_name}' not found.") from exc
        try:
            return template.render(**context)
        except UndefinedError as exc:
            raise TemplateError(f"Template '{template_name}' failed to render: {exc}") from exc


__all__ = ["TemplateEngine", "TemplateError"]
