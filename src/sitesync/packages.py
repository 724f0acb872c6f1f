"""Installed-package queries against the system package manager."""
from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Iterable, Sequence

from .errors import MissingDependencyError, SiteSyncError

LOGGER = logging.getLogger(__name__)

QUERY_COMMANDS: dict[str, tuple[str, ...]] = {
    "rpm": ("rpm", "-q", "--qf", "%{VERSION}-%{RELEASE}"),
    "dpkg": ("dpkg-query", "-W", "-f", "${Version}"),
}


class PackageQueryError(SiteSyncError):
    """Raised when the package manager cannot be queried at all."""


class PackageProvider:
    """Answer "is this package installed, and at which release" questions.

    Results are cached for the lifetime of the provider; a reconciliation run
    asks about the same handful of packages for every site. The ``none``
    backend treats every package as installed with an unknown release.
    """

    def __init__(self, backend: str = "rpm") -> None:
        if backend != "none" and backend not in QUERY_COMMANDS:
            raise ValueError(f"unsupported package backend: {backend}")
        self.backend = backend
        self._cache: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def installed_version(self, name: str) -> str | None:
        """Return ``version-release`` for *name*, or None when absent."""
        if self.backend == "none":
            return None
        with self._lock:
            if name in self._cache:
                return self._cache[name]
        version = self._query(name)
        with self._lock:
            self._cache[name] = version
        return version

    def is_installed(self, name: str) -> bool:
        if self.backend == "none":
            return True
        return self.installed_version(name) is not None

    def require(self, names: Iterable[str], *, site: str | None = None) -> None:
        """Raise :class:`MissingDependencyError` listing every absent package."""
        missing = [name for name in names if not self.is_installed(name)]
        if missing:
            raise MissingDependencyError(missing, site=site)

    def _query(self, name: str) -> str | None:
        args = [*QUERY_COMMANDS[self.backend], name]
        result = self._run_query(args)
        if result.returncode != 0:
            LOGGER.debug("Package %s not installed (%s exit %d).", name, args[0], result.returncode)
            return None
        output = (result.stdout or "").strip()
        return output or None

    def _run_query(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise PackageQueryError(f"{args[0]} not found: {exc}") from exc


__all__ = ["PackageProvider", "PackageQueryError", "QUERY_COMMANDS"]
