"""Error taxonomy shared by the reconciliation layers.

Every error surfaced to callers of :meth:`sitesync.reconcile.Reconciler.reconcile`
derives from :class:`SiteSyncError`. The reconciler stamps the site name and the
install plan stamps the relative path of the failing action, so the CLI can
report ``site 'alpha': conf/server.xml: permission denied`` without each layer
formatting its own messages.
"""
from __future__ import annotations

import errno
import os


class SiteSyncError(RuntimeError):
    """Base class for reconciliation failures."""

    def __init__(
        self,
        message: str,
        *,
        site: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.site = site
        self.path = path

    def __str__(self) -> str:
        parts: list[str] = []
        if self.site is not None:
            parts.append(f"site '{self.site}'")
        if self.path is not None:
            parts.append(self.path)
        parts.append(self.message)
        return ": ".join(parts)


class UnsupportedVersionError(SiteSyncError):
    """Raised when a site declares a version with no registered strategy."""

    def __init__(self, identifier: str, *, site: str | None = None) -> None:
        super().__init__(f"unsupported version '{identifier}'", site=site)
        self.identifier = identifier


class UnsupportedOperationError(SiteSyncError):
    """Raised when a strategy is asked for something it cannot do."""


class MissingDependencyError(SiteSyncError):
    """Raised when a required package is not installed."""

    def __init__(self, packages: list[str] | tuple[str, ...], *, site: str | None = None) -> None:
        joined = ", ".join(packages)
        super().__init__(f"required packages not installed: {joined}", site=site)
        self.packages = tuple(packages)


class PathEscapeError(SiteSyncError):
    """Raised when an action path would resolve outside the installation root."""


class InstallError(SiteSyncError):
    """Raised when a filesystem mutation fails."""


class PermissionDeniedError(InstallError):
    """Raised on EACCES/EPERM."""


class NoSpaceError(InstallError):
    """Raised when the filesystem or quota is full."""


class ParentNotDirectoryError(InstallError):
    """Raised when a parent component of a path is not a directory."""


class ExhaustedNamespaceError(InstallError):
    """Raised when no free backup name can be found."""


class BestEffortDriftStripFailed(SiteSyncError):
    """Raised internally when a banner strip fails; logged and never propagated."""


_ERRNO_MAP: dict[int, type[InstallError]] = {
    errno.EACCES: PermissionDeniedError,
    errno.EPERM: PermissionDeniedError,
    errno.ENOSPC: NoSpaceError,
    errno.ENOTDIR: ParentNotDirectoryError,
}
if hasattr(errno, "EDQUOT"):
    _ERRNO_MAP[errno.EDQUOT] = NoSpaceError


def translate_os_error(exc: OSError, path: str | os.PathLike[str] | None = None) -> InstallError:
    """Map *exc* onto the install error taxonomy."""
    error_type = _ERRNO_MAP.get(exc.errno or 0, InstallError)
    reason = exc.strerror or str(exc)
    target = os.fspath(path) if path is not None else exc.filename
    message = f"{reason} ({target})" if target else reason
    return error_type(message)


__all__ = [
    "BestEffortDriftStripFailed",
    "ExhaustedNamespaceError",
    "InstallError",
    "MissingDependencyError",
    "NoSpaceError",
    "ParentNotDirectoryError",
    "PathEscapeError",
    "PermissionDeniedError",
    "SiteSyncError",
    "UnsupportedOperationError",
    "UnsupportedVersionError",
    "translate_os_error",
]
