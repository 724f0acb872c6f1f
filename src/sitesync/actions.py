"""Declarative installation actions.

An action describes the desired state of one path relative to an installation
root. Versions declare their layout as a list of actions; applying the list
converges the root to that layout through :class:`~sitesync.atomic.AtomicWriter`.
"""
from __future__ import annotations

import os
import posixpath
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import ClassVar

from .atomic import AtomicWriter, WriteOutcome
from .errors import PathEscapeError, translate_os_error
from .models import SiteDescriptor
from .templates import TemplateEngine

Generator = Callable[["InstallContext"], bytes]


def normalize_relative(path: str) -> str:
    """Return *path* normalised, rejecting anything outside the root."""
    if not path or os.path.isabs(path):
        raise PathEscapeError("action paths must be relative to the installation root", path=path)
    normalised = posixpath.normpath(path)
    if normalised in (".", "..") or normalised.startswith("../"):
        raise PathEscapeError("action path escapes the installation root", path=path)
    return normalised


@dataclass(frozen=True, slots=True)
class InstallContext:
    """Per-site values shared by every action of one pass."""

    site: SiteDescriptor
    version_dir: str
    versions_root: Path
    templates: TemplateEngine
    jdk_profile: str = "/opt/jdk/profile.sh"
    banner: str = ""
    conf_mode: int = 0o775
    backup_extension: str = ".bak"
    extra: Mapping[str, object] = field(default_factory=dict)

    @property
    def root(self) -> Path:
        return self.site.root

    @property
    def uid(self) -> int | None:
        return self.site.uid

    @property
    def gid(self) -> int | None:
        return self.site.gid

    @property
    def version_path(self) -> Path:
        """Return the read-only directory of the selected version."""
        return self.versions_root / self.version_dir

    @property
    def opt_prefix(self) -> str:
        """Relative path from the root to the versions base, with trailing slash."""
        relative = os.path.relpath(self.versions_root, self.root)
        return "" if relative == "." else f"{relative}/"

    def resolve(self, relative: str) -> Path:
        """Return the absolute path for *relative* inside the root."""
        return self.root / normalize_relative(relative)

    def derived_target(self, relative: str) -> str:
        """Return the symlink target into the version directory for *relative*."""
        normalised = normalize_relative(relative)
        return "../" * normalised.count("/") + f"{self.opt_prefix}{self.version_dir}/{normalised}"

    def render(self, template: str, **values: object) -> bytes:
        """Render *template* with the standard site variables."""
        variables: dict[str, object] = {
            "site": self.site,
            "root": str(self.root),
            "version_dir": self.version_dir,
            "version_path": str(self.version_path),
            "opt_prefix": self.opt_prefix,
            "jdk_profile": self.jdk_profile,
            "banner": self.banner,
            "backup_extension": self.backup_extension,
        }
        variables.update(self.extra)
        variables.update(values)
        return self.templates.render_bytes(template, variables)


@dataclass(frozen=True, slots=True)
class InstallAction:
    """Base for the closed set of action variants."""

    kind: ClassVar[str] = "action"

    path: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_relative(self.path))

    def apply(self, context: InstallContext, writer: AtomicWriter) -> WriteOutcome:
        raise NotImplementedError

    def describe(self) -> str:
        """Return a one-line summary used by ``sitesync plan``."""
        return self.path


@dataclass(frozen=True, slots=True)
class Delete(InstallAction):
    """Move an obsolete entry aside."""

    kind: ClassVar[str] = "delete"

    def apply(self, context: InstallContext, writer: AtomicWriter) -> WriteOutcome:
        return writer.delete(context.resolve(self.path))


@dataclass(frozen=True, slots=True)
class Mkdir(InstallAction):
    kind: ClassVar[str] = "mkdir"

    mode: int = 0o770

    def apply(self, context: InstallContext, writer: AtomicWriter) -> WriteOutcome:
        return writer.ensure_directory(
            context.resolve(self.path), self.mode, context.uid, context.gid
        )

    def describe(self) -> str:
        return f"{self.path} ({self.mode:04o})"


@dataclass(frozen=True, slots=True)
class Symlink(InstallAction):
    """Link to an explicit target, or into the version directory when unset."""

    kind: ClassVar[str] = "symlink"

    target: str | None = None

    def link_target(self, context: InstallContext) -> str:
        if self.target is not None:
            return self.target
        return context.derived_target(self.path)

    def apply(self, context: InstallContext, writer: AtomicWriter) -> WriteOutcome:
        return writer.ensure_symlink(
            context.resolve(self.path), self.link_target(context), context.uid, context.gid
        )

    def describe(self) -> str:
        return f"{self.path} -> {self.target or '<version dir>'}"


@dataclass(frozen=True, slots=True)
class SymlinkAll(InstallAction):
    """Mirror a version directory's member set as individual links."""

    kind: ClassVar[str] = "symlink-all"

    def apply(self, context: InstallContext, writer: AtomicWriter) -> WriteOutcome:
        prefix = "../" * (self.path.count("/") + 1)
        return writer.symlink_all(
            context.resolve(self.path),
            context.version_path / self.path,
            f"{prefix}{context.opt_prefix}{context.version_dir}/{self.path}/",
            context.uid,
            context.gid,
        )


@dataclass(frozen=True, slots=True)
class Copy(InstallAction):
    """Copy a file from the version directory so the site may edit it."""

    kind: ClassVar[str] = "copy"

    mode: int = 0o660

    def apply(self, context: InstallContext, writer: AtomicWriter) -> WriteOutcome:
        source = context.version_path / self.path
        try:
            data = source.read_bytes()
        except OSError as exc:
            raise translate_os_error(exc, source) from exc
        return writer.write_file(
            context.resolve(self.path), data, self.mode, context.uid, context.gid
        )

    def describe(self) -> str:
        return f"{self.path} ({self.mode:04o})"


@dataclass(frozen=True, slots=True)
class GeneratedFile(InstallAction):
    """Write bytes produced by a pure generator of the install context."""

    kind: ClassVar[str] = "generated"

    mode: int = 0o640
    generator: Generator | None = field(default=None, compare=False)

    def content(self, context: InstallContext) -> bytes:
        if self.generator is None:
            raise ValueError(f"generated file {self.path} has no generator")
        return self.generator(context)

    def apply(self, context: InstallContext, writer: AtomicWriter) -> WriteOutcome:
        return writer.write_file(
            context.resolve(self.path), self.content(context), self.mode, context.uid, context.gid
        )

    def describe(self) -> str:
        return f"{self.path} ({self.mode:04o})"


def _render_template(template: str, context: InstallContext, **values: object) -> bytes:
    return context.render(template, **values)


def template_file(path: str, template: str, mode: int = 0o640, **values: object) -> GeneratedFile:
    """Return a :class:`GeneratedFile` rendered from *template*."""
    return GeneratedFile(path, mode, partial(_render_template, template, **values))


def profile_script(path: str, mode: int = 0o700) -> GeneratedFile:
    """Return a wrapper that loads the site profile and execs the packaged script."""
    return template_file(path, "scripts/profile_script.sh.j2", mode, script_path=normalize_relative(path))


__all__ = [
    "Copy",
    "Delete",
    "GeneratedFile",
    "Generator",
    "InstallAction",
    "InstallContext",
    "Mkdir",
    "Symlink",
    "SymlinkAll",
    "normalize_relative",
    "profile_script",
    "template_file",
]
