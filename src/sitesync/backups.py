"""Helpers for choosing backup names for replaced filesystem entries.

Backups are never overwritten: each one lands at the lowest free
``<original><separator><n><extension>`` name. Retention is left to external
housekeeping.
"""
from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date

from .errors import ExhaustedNamespaceError

DEFAULT_SEPARATOR = "."
DEFAULT_EXTENSION = ".bak"
DEFAULT_MAX_SEQUENCE = 10_000
DATE_SEPARATOR = "-"

ExistsPredicate = Callable[[str], bool]


def next_backup_path(
    original: str | os.PathLike[str],
    separator: str = DEFAULT_SEPARATOR,
    extension: str = DEFAULT_EXTENSION,
    *,
    exists: ExistsPredicate = os.path.lexists,
    limit: int = DEFAULT_MAX_SEQUENCE,
) -> str:
    """Return the first unused backup path for *original*.

    ``exists`` defaults to :func:`os.path.lexists` so dangling symlinks count as
    occupied names. Raises :class:`ExhaustedNamespaceError` once *limit*
    candidates have been tried.
    """
    base = os.fspath(original)
    for sequence in range(limit):
        candidate = f"{base}{separator}{sequence}{extension}"
        if not exists(candidate):
            return candidate
    raise ExhaustedNamespaceError(
        f"no unused backup name for {base} after {limit} attempts"
    )


def backup_suffix(today: date | None = None) -> str:
    """Return the dated suffix inserted before the backup sequence number."""
    current = today or date.today()
    return f"{DATE_SEPARATOR}{current.isoformat()}"


@dataclass(slots=True)
class BackupNamer:
    """Naming policy bound to one reconciliation pass."""

    separator: str = DEFAULT_SEPARATOR
    extension: str = DEFAULT_EXTENSION
    suffix: str = ""
    limit: int = DEFAULT_MAX_SEQUENCE
    exists: ExistsPredicate = field(default=os.path.lexists)

    @classmethod
    def dated(
        cls,
        *,
        separator: str = DEFAULT_SEPARATOR,
        extension: str = DEFAULT_EXTENSION,
        limit: int = DEFAULT_MAX_SEQUENCE,
        today: date | None = None,
    ) -> BackupNamer:
        """Return a namer that embeds today's date in every backup name."""
        return cls(
            separator=separator,
            extension=extension,
            suffix=backup_suffix(today),
            limit=limit,
        )

    def next_path(self, original: str | os.PathLike[str]) -> str:
        """Return the next free backup path for *original*."""
        return next_backup_path(
            f"{os.fspath(original)}{self.suffix}",
            self.separator,
            self.extension,
            exists=self.exists,
            limit=self.limit,
        )

    def is_backup(self, name: str) -> bool:
        """Return True when *name* already carries the backup extension."""
        return name.endswith(self.extension)


__all__ = [
    "BackupNamer",
    "DEFAULT_EXTENSION",
    "DEFAULT_SEPARATOR",
    "backup_suffix",
    "next_backup_path",
]
