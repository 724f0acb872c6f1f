"""In-place upgrade tables.

Patch releases of a packaged version swap individual library jars. Each swap
is expressed as an :class:`UpgradeSymlink`: remove a link only when it still
points at the old target, then create its replacement. Tables live in
``upgrades.yml`` next to this module and are keyed by version identifier.
"""
from __future__ import annotations

import logging
import os
import re
import stat
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from importlib import resources
from pathlib import Path

import yaml
from packaging.version import InvalidVersion, Version

from ..atomic import AtomicWriter
from ..errors import SiteSyncError, UnsupportedOperationError, translate_os_error

LOGGER = logging.getLogger(__name__)

TOMCAT_PLACEHOLDER = "{tomcat}"
_RELEASE_PATTERN = re.compile(r"^\d+(?:\.\d+)*(?:-\d+)?")


class UpgradeTableError(SiteSyncError):
    """Raised when the packaged upgrade tables are malformed."""


def parse_release(text: str) -> Version:
    """Parse a ``version-release`` string, ignoring distribution suffixes."""
    match = _RELEASE_PATTERN.match(text.strip())
    if match is None:
        raise SiteSyncError(f"cannot parse package release '{text}'")
    try:
        return Version(match.group(0))
    except InvalidVersion as exc:  # pragma: no cover - regex guards the format
        raise SiteSyncError(f"cannot parse package release '{text}'") from exc


@dataclass(frozen=True, slots=True)
class UpgradeSymlink:
    """One conditional symlink swap relative to an installation root."""

    old_path: str
    old_target: str | None
    new_path: str | None = None
    new_target: str | None = None

    def __post_init__(self) -> None:
        if self.old_path == self.new_path and self.old_target == self.new_target:
            raise ValueError(f"upgrade of {self.old_path} does not change anything")
        if (self.new_path is None) != (self.new_target is None):
            raise ValueError(f"new path and new target must be given together for {self.old_path}")
        if self.old_target is None and self.new_target is None:
            raise ValueError(f"upgrade of {self.old_path} needs an old or a new target")

    @classmethod
    def in_place(cls, path: str, old_target: str | None, new_target: str | None) -> UpgradeSymlink:
        """Retarget, remove or create the link at *path*."""
        return cls(path, old_target, path if new_target is not None else None, new_target)

    def apply(
        self,
        root: Path,
        writer: AtomicWriter,
        uid: int | None = None,
        gid: int | None = None,
    ) -> bool:
        """Apply the swap under *root*; return True when a restart is needed.

        Fixing ownership of an already correct link does not count.
        """
        old_link = os.path.join(root, self.old_path)
        new_link = os.path.join(root, self.new_path) if self.new_path is not None else None
        needs_restart = False
        try:
            if self.old_target is None:
                if new_link is not None and not os.path.lexists(old_link) and not os.path.lexists(new_link):
                    writer.ensure_symlink(new_link, self.new_target or "", uid, gid)
                    needs_restart = True
            elif os.path.islink(old_link) and os.readlink(old_link) == self.old_target:
                os.unlink(old_link)
                if new_link is not None and self.new_target is not None:
                    writer.ensure_symlink(new_link, self.new_target, uid, gid)
                needs_restart = True
            if new_link is not None and not needs_restart:
                _fix_owner(new_link, uid, gid)
        except OSError as exc:
            raise translate_os_error(exc, old_link) from exc
        if needs_restart:
            LOGGER.info("Upgraded link %s under %s.", self.new_path or self.old_path, root)
        return needs_restart


def _fix_owner(link: str, uid: int | None, gid: int | None) -> None:
    if uid is None and gid is None:
        return
    try:
        current = os.lstat(link)
    except FileNotFoundError:
        return
    if not stat.S_ISLNK(current.st_mode):
        return
    if (uid is not None and current.st_uid != uid) or (gid is not None and current.st_gid != gid):
        os.lchown(link, -1 if uid is None else uid, -1 if gid is None else gid)


@dataclass(frozen=True, slots=True)
class UpgradeStep:
    """Swaps applied when the installed release falls inside a range."""

    symlinks: tuple[UpgradeSymlink, ...]
    since: Version | None = None
    before: Version | None = None

    def applies_to(self, release: Version) -> bool:
        if self.since is not None and release < self.since:
            return False
        if self.before is not None and release >= self.before:
            return False
        return True


@dataclass(frozen=True, slots=True)
class UpgradeTable:
    """All in-place upgrade steps for one version."""

    steps: tuple[UpgradeStep, ...] = ()
    minimum_release: Version | None = None

    def symlinks_for(self, release: Version) -> list[UpgradeSymlink]:
        """Return the swaps to apply for *release*, in declaration order."""
        if self.minimum_release is not None and release < self.minimum_release:
            raise UnsupportedOperationError(
                f"installed release {release} is older than expected ({self.minimum_release})"
            )
        swaps: list[UpgradeSymlink] = []
        for step in self.steps:
            if step.applies_to(release):
                swaps.extend(step.symlinks)
        return swaps


def load_upgrade_tables() -> dict[str, UpgradeTable]:
    """Load ``upgrades.yml`` shipped with the package."""
    text = resources.files(__package__).joinpath("upgrades.yml").read_text(encoding="utf-8")
    return parse_upgrade_tables(yaml.safe_load(text) or {})


def parse_upgrade_tables(raw: object) -> dict[str, UpgradeTable]:
    """Convert a parsed YAML mapping into :class:`UpgradeTable` objects."""
    if not isinstance(raw, Mapping):
        raise UpgradeTableError("upgrade tables must be a mapping keyed by version")
    tables: dict[str, UpgradeTable] = {}
    for identifier, body in raw.items():
        if not isinstance(body, Mapping):
            raise UpgradeTableError(f"upgrade table for {identifier} must be a mapping")
        minimum = body.get("minimum_release")
        steps_raw = body.get("steps") or []
        if not isinstance(steps_raw, Sequence):
            raise UpgradeTableError(f"steps for {identifier} must be a list")
        steps = tuple(_parse_step(str(identifier), entry) for entry in steps_raw)
        tables[str(identifier)] = UpgradeTable(
            steps=steps,
            minimum_release=parse_release(str(minimum)) if minimum else None,
        )
    return tables


def _parse_step(identifier: str, entry: object) -> UpgradeStep:
    if not isinstance(entry, Mapping):
        raise UpgradeTableError(f"upgrade step for {identifier} must be a mapping")
    since = entry.get("since")
    before = entry.get("before")
    symlinks_raw = entry.get("symlinks") or []
    if not isinstance(symlinks_raw, Sequence):
        raise UpgradeTableError(f"symlinks for {identifier} must be a list")
    symlinks: list[UpgradeSymlink] = []
    for item in symlinks_raw:
        if not isinstance(item, Mapping) or "path" not in item:
            raise UpgradeTableError(f"symlink entry for {identifier} needs a path")
        path = str(item["path"])
        new_target = item.get("new")
        new_path = item.get("new_path", path if new_target is not None else None)
        try:
            symlinks.append(
                UpgradeSymlink(
                    path,
                    _optional_str(item.get("old")),
                    _optional_str(new_path),
                    _optional_str(new_target),
                )
            )
        except ValueError as exc:
            raise UpgradeTableError(f"invalid upgrade entry for {identifier}: {exc}") from exc
    return UpgradeStep(
        symlinks=tuple(symlinks),
        since=parse_release(str(since)) if since else None,
        before=parse_release(str(before)) if before else None,
    )


def _optional_str(value: object) -> str | None:
    return None if value is None else str(value)


def expand_targets(swaps: Iterable[UpgradeSymlink], tomcat_prefix: str) -> list[UpgradeSymlink]:
    """Replace the ``{tomcat}`` placeholder with the site's relative prefix."""
    expanded: list[UpgradeSymlink] = []
    for swap in swaps:
        expanded.append(
            UpgradeSymlink(
                swap.old_path,
                _expand(swap.old_target, tomcat_prefix),
                swap.new_path,
                _expand(swap.new_target, tomcat_prefix),
            )
        )
    return expanded


def _expand(target: str | None, prefix: str) -> str | None:
    if target is None:
        return None
    return target.replace(TOMCAT_PLACEHOLDER, prefix)


__all__ = [
    "UpgradeStep",
    "UpgradeSymlink",
    "UpgradeTable",
    "UpgradeTableError",
    "expand_targets",
    "load_upgrade_tables",
    "parse_release",
    "parse_upgrade_tables",
]
