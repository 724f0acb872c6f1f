"""Jinja2 template engine used for every generated artifact."""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
)

from .errors import SiteSyncError


class TemplateRenderError(SiteSyncError):
    """Raised when a template cannot be loaded or rendered."""


@dataclass(slots=True)
class TemplateEngine:
    """Render packaged templates, optionally shadowed by an override directory."""

    override_dir: Path | None = None
    environment: Environment = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Build the Jinja2 environment with strict undefined handling."""
        loaders: list[BaseLoader] = []
        if self.override_dir is not None and self.override_dir.is_dir():
            loaders.append(FileSystemLoader(str(self.override_dir)))
        loaders.append(PackageLoader("sitesync", "templates"))
        self.environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    @classmethod
    def with_overrides(cls, override_dir: str | os.PathLike[str] | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        return cls(Path(override_dir).expanduser() if override_dir is not None else None)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self.environment.get_template(name)
            return template.render(**dict(context))
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render template {name}: {exc}") from exc

    def render_bytes(self, name: str, context: Mapping[str, object]) -> bytes:
        """Render template *name* and encode the result as UTF-8."""
        return self.render_to_string(name, context).encode("utf-8")


__all__ = ["TemplateEngine", "TemplateRenderError"]
