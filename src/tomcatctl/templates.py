"""Template rendering for generated instance artifacts.

Built-in Jinja2 templates ship inside the package under ``templates/``. An
operator override directory, when it exists, is searched first so that any
template can be replaced without patching the package. Rendering is strict:
a missing context variable is an error rather than an empty string.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError as JinjaTemplateError,
)


class TemplateError(RuntimeError):
    """Raised when a template cannot be located or rendered."""


def _autoescape(name: str | None) -> bool:
    return name is not None and name.endswith(".xml.j2")


@dataclass(slots=True)
class TemplateEngine:
    """Render packaged (or overridden) templates to strings."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine searching *override_dir* before the built-in templates."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("tomcatctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=_autoescape,
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**dict(context))
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render template '{template_name}': {exc}") from exc


__all__ = ["TemplateEngine", "TemplateError"]
