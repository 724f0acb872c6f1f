"""Atomic filesystem mutations with backup of replaced entries.

Every mutation follows the same shape: the new entry is prepared beside the
target under a temporary name, any prior entry is preserved at a backup path
chosen by :class:`~sitesync.backups.BackupNamer`, and ``os.replace`` commits the
result. A crash before the commit leaves the target untouched; a crash after
it leaves the complete new entry.
"""
from __future__ import annotations

import logging
import os
import secrets
import shutil
import stat
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .backups import BackupNamer
from .errors import translate_os_error

LOGGER = logging.getLogger(__name__)


class WriteOutcome(str, Enum):
    """Result of applying one mutation."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"

    @property
    def changed(self) -> bool:
        """Return True when the filesystem was modified."""
        return self is WriteOutcome.CHANGED

    @classmethod
    def of(cls, changed: bool) -> WriteOutcome:
        """Return the outcome matching *changed*."""
        return cls.CHANGED if changed else cls.UNCHANGED


@dataclass(slots=True)
class AtomicWriter:
    """Apply file, symlink and directory state under one backup policy."""

    namer: BackupNamer = field(default_factory=BackupNamer)
    backups: list[str] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    def write_file(
        self,
        path: str | os.PathLike[str],
        data: bytes,
        mode: int,
        uid: int | None = None,
        gid: int | None = None,
    ) -> WriteOutcome:
        """Ensure *path* is a regular file holding exactly *data*.

        Equal content is never rewritten, so the mtime survives; only mode and
        ownership drift is corrected in that case.
        """
        target = os.fspath(path)
        try:
            current = _lstat(target)
            if current is not None and not stat.S_ISREG(current.st_mode):
                self._move_to_backup(target)
                current = None
            if current is not None and _content_equals(target, data, current):
                return self._fix_metadata(target, current, mode, uid, gid)
            self._replace_file(target, data, mode, uid, gid, preserve=current is not None)
        except OSError as exc:
            raise translate_os_error(exc, target) from exc
        LOGGER.debug("Wrote %s (%d bytes).", target, len(data))
        return WriteOutcome.CHANGED

    def ensure_symlink(
        self,
        path: str | os.PathLike[str],
        target: str,
        uid: int | None = None,
        gid: int | None = None,
    ) -> WriteOutcome:
        """Ensure *path* is a symlink pointing at *target*."""
        link = os.fspath(path)
        try:
            current = _lstat(link)
            if current is not None and stat.S_ISLNK(current.st_mode):
                if os.readlink(link) == target:
                    return self._fix_link_owner(link, current, uid, gid)
            tmp_name = _sibling_temp_name(link)
            os.symlink(target, tmp_name)
            try:
                _lchown(tmp_name, uid, gid)
                if current is not None:
                    if stat.S_ISDIR(current.st_mode):
                        self._move_to_backup(link)
                    else:
                        self._preserve(link)
                self._commit(tmp_name, link)
            finally:
                if os.path.lexists(tmp_name):
                    os.unlink(tmp_name)
        except OSError as exc:
            raise translate_os_error(exc, link) from exc
        LOGGER.debug("Linked %s -> %s.", link, target)
        return WriteOutcome.CHANGED

    def ensure_directory(
        self,
        path: str | os.PathLike[str],
        mode: int,
        uid: int | None = None,
        gid: int | None = None,
    ) -> WriteOutcome:
        """Ensure *path* is a real directory with the given mode and owner."""
        directory = os.fspath(path)
        try:
            current = _lstat(directory)
            if current is not None and not stat.S_ISDIR(current.st_mode):
                self._move_to_backup(directory)
                current = None
            if current is not None:
                return self._fix_metadata(directory, current, mode, uid, gid)
            os.mkdir(directory, mode)
            os.chmod(directory, mode)
            _chown(directory, uid, gid)
        except OSError as exc:
            raise translate_os_error(exc, directory) from exc
        LOGGER.debug("Created directory %s.", directory)
        return WriteOutcome.CHANGED

    def delete(self, path: str | os.PathLike[str]) -> WriteOutcome:
        """Move *path* aside to a backup name when it exists."""
        entry = os.fspath(path)
        try:
            if not os.path.lexists(entry):
                return WriteOutcome.UNCHANGED
            self._move_to_backup(entry)
        except OSError as exc:
            raise translate_os_error(exc, entry) from exc
        return WriteOutcome.CHANGED

    def symlink_all(
        self,
        path: str | os.PathLike[str],
        source_dir: str | os.PathLike[str],
        target_prefix: str,
        uid: int | None = None,
        gid: int | None = None,
    ) -> WriteOutcome:
        """Mirror every entry of *source_dir* into *path* as symlinks.

        Entries of *path* with no counterpart in *source_dir* are moved to a
        backup unless they already carry the backup extension.
        """
        directory = os.fspath(path)
        try:
            expected = sorted(os.listdir(source_dir))
            existing = sorted(os.listdir(directory))
        except OSError as exc:
            raise translate_os_error(exc, directory) from exc

        changed = False
        for name in expected:
            outcome = self.ensure_symlink(
                os.path.join(directory, name),
                f"{target_prefix}{name}",
                uid,
                gid,
            )
            changed = changed or outcome.changed

        wanted = set(expected)
        for name in existing:
            if name in wanted or self.namer.is_backup(name):
                continue
            self.delete(os.path.join(directory, name))
            changed = True
        return WriteOutcome.of(changed)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _replace_file(
        self,
        target: str,
        data: bytes,
        mode: int,
        uid: int | None,
        gid: int | None,
        *,
        preserve: bool,
    ) -> None:
        directory = os.path.dirname(target) or "."
        tmp_fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(target)}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, mode)
            _chown(tmp_name, uid, gid)
            if preserve:
                self._preserve(target)
            self._commit(tmp_name, target)
        finally:
            tmp_path.unlink(missing_ok=True)

    def _commit(self, source: str, destination: str) -> None:
        os.replace(source, destination)

    def _preserve(self, entry: str) -> str:
        """Keep the current entry reachable at a backup name without moving it."""
        backup = self.namer.next_path(entry)
        try:
            os.link(entry, backup, follow_symlinks=False)
        except OSError:
            # Some filesystems refuse hard links; fall back to a copy.
            if os.path.islink(entry):
                os.symlink(os.readlink(entry), backup)
                self._record_backup(entry, backup)
                return backup
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=os.path.dirname(entry) or ".",
                prefix=f".{os.path.basename(backup)}.",
            )
            os.close(tmp_fd)
            tmp_path = Path(tmp_name)
            try:
                shutil.copy2(entry, tmp_name)
                os.rename(tmp_name, backup)
            finally:
                tmp_path.unlink(missing_ok=True)
        self._record_backup(entry, backup)
        return backup

    def _move_to_backup(self, entry: str) -> str:
        backup = self.namer.next_path(entry)
        os.rename(entry, backup)
        self._record_backup(entry, backup)
        return backup

    def _record_backup(self, entry: str, backup: str) -> None:
        self.backups.append(backup)
        LOGGER.info("Backed up %s to %s.", entry, backup)

    def _fix_metadata(
        self,
        path: str,
        current: os.stat_result,
        mode: int,
        uid: int | None,
        gid: int | None,
    ) -> WriteOutcome:
        changed = False
        if stat.S_IMODE(current.st_mode) != mode:
            os.chmod(path, mode)
            changed = True
        if _owner_differs(current, uid, gid):
            _chown(path, uid, gid)
            changed = True
        return WriteOutcome.of(changed)

    def _fix_link_owner(
        self,
        link: str,
        current: os.stat_result,
        uid: int | None,
        gid: int | None,
    ) -> WriteOutcome:
        if not _owner_differs(current, uid, gid):
            return WriteOutcome.UNCHANGED
        _lchown(link, uid, gid)
        return WriteOutcome.CHANGED


def _lstat(path: str) -> os.stat_result | None:
    try:
        return os.lstat(path)
    except FileNotFoundError:
        return None


def _content_equals(path: str, data: bytes, current: os.stat_result) -> bool:
    if current.st_size != len(data):
        return False
    with open(path, "rb") as handle:
        return handle.read() == data


def _owner_differs(current: os.stat_result, uid: int | None, gid: int | None) -> bool:
    return (uid is not None and current.st_uid != uid) or (
        gid is not None and current.st_gid != gid
    )


def _chown(path: str, uid: int | None, gid: int | None) -> None:
    if uid is None and gid is None:
        return
    os.chown(path, -1 if uid is None else uid, -1 if gid is None else gid)


def _lchown(path: str, uid: int | None, gid: int | None) -> None:
    if uid is None and gid is None:
        return
    os.lchown(path, -1 if uid is None else uid, -1 if gid is None else gid)


def _sibling_temp_name(path: str) -> str:
    directory, name = os.path.split(path)
    return os.path.join(directory, f".{name}.{secrets.token_hex(6)}.tmp")


__all__ = ["AtomicWriter", "WriteOutcome"]
