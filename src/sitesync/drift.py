"""Manual-mode drift handling.

Once an administrator takes ownership of a site, generated files are no longer
rewritten. The only thing reconciliation still does is remove the
"automatically created" banner that would otherwise mislead the administrator,
leaving everything beneath it intact.
"""
from __future__ import annotations

import logging
import os
import stat
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .errors import BestEffortDriftStripFailed

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ManualDriftResolver:
    """Strip the first matching banner from a manually owned file.

    ``banners`` is an ordered attempt list. Legacy forms come first because a
    shorter banner may be a prefix of a longer one.
    """

    banners: tuple[bytes, ...]

    @classmethod
    def from_texts(cls, banners: Sequence[str]) -> ManualDriftResolver:
        """Build a resolver from text banners, skipping empty entries."""
        return cls(tuple(text.encode("utf-8") for text in banners if text))

    def resolve(self, path: str | os.PathLike[str]) -> bool:
        """Strip a banner from *path*; return True when the file changed.

        Failures are logged and reported as ``False``.
        """
        try:
            return self.strip(path)
        except BestEffortDriftStripFailed as exc:
            LOGGER.warning("Leaving manual file untouched: %s", exc)
            return False

    def strip(self, path: str | os.PathLike[str]) -> bool:
        """Strip a banner from *path*, raising on failure."""
        target = os.fspath(path)
        try:
            current = os.lstat(target)
            if stat.S_ISLNK(current.st_mode):
                raise BestEffortDriftStripFailed("refusing to rewrite a symbolic link", path=target)
            if not stat.S_ISREG(current.st_mode):
                raise BestEffortDriftStripFailed("not a regular file", path=target)
            with open(target, "rb") as handle:
                content = handle.read()
            banner = self.match(content)
            if banner is None:
                return False
            _rewrite_preserving(target, content[len(banner):], current)
        except OSError as exc:
            raise BestEffortDriftStripFailed(
                exc.strerror or str(exc),
                path=target,
            ) from exc
        LOGGER.info("Stripped generated banner from manual file %s.", target)
        return True

    def match(self, content: bytes) -> bytes | None:
        """Return the first banner that prefixes *content*."""
        for banner in self.banners:
            if content.startswith(banner):
                return banner
        return None


def _rewrite_preserving(target: str, data: bytes, current: os.stat_result) -> None:
    tmp_fd, tmp_name = tempfile.mkstemp(
        dir=os.path.dirname(target) or ".",
        prefix=f".{os.path.basename(target)}.",
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, stat.S_IMODE(current.st_mode))
        if (os.getuid(), os.getgid()) != (current.st_uid, current.st_gid):
            os.chown(tmp_path, current.st_uid, current.st_gid)
        os.replace(tmp_path, target)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = ["ManualDriftResolver"]
