"""Lookup table from version identifiers to strategies."""
from __future__ import annotations

import threading
from collections.abc import Callable, Mapping

from packaging.version import Version

from ..errors import UnsupportedVersionError
from . import legacy, versioned
from .strategy import VersionStrategy
from .upgrade import UpgradeTable, load_upgrade_tables

StrategyFactory = Callable[[Mapping[str, UpgradeTable]], VersionStrategy]

BUILTIN_FACTORIES: dict[str, StrategyFactory] = {
    "6.0": lambda tables: legacy.build_strategy("6.0"),
    "7.0": lambda tables: legacy.build_strategy("7.0"),
    "8.0": lambda tables: legacy.build_strategy(
        "8.0", extra_conf_copies=("conf/jaspic-providers.xml",)
    ),
    "8.5": lambda tables: versioned.build_strategy("8.5", upgrade_table=tables.get("8.5")),
    "9.0": lambda tables: versioned.build_strategy("9.0", upgrade_table=tables.get("9.0")),
    "10.0": lambda tables: versioned.build_strategy(
        "10.0",
        extra_profile_scripts=("bin/migrate.sh",),
        upgrade_table=tables.get("10.0"),
    ),
    "10.1": lambda tables: versioned.build_strategy(
        "10.1",
        extra_profile_scripts=("bin/migrate.sh",),
        upgrade_table=tables.get("10.1"),
    ),
}


class VersionRegistry:
    """Read-only registry, built lazily on first lookup."""

    def __init__(
        self,
        factories: Mapping[str, StrategyFactory] | None = None,
        *,
        tables_loader: Callable[[], Mapping[str, UpgradeTable]] = load_upgrade_tables,
    ) -> None:
        self._factories = dict(BUILTIN_FACTORIES if factories is None else factories)
        self._tables_loader = tables_loader
        self._lock = threading.Lock()
        self._strategies: dict[str, VersionStrategy] | None = None

    def _built(self) -> dict[str, VersionStrategy]:
        with self._lock:
            if self._strategies is None:
                tables = self._tables_loader()
                self._strategies = {
                    identifier: factory(tables) for identifier, factory in self._factories.items()
                }
            return self._strategies

    def select_strategy(self, identifier: str, *, site: str | None = None) -> VersionStrategy:
        """Return the strategy for *identifier*."""
        strategy = self._built().get(identifier.strip())
        if strategy is None:
            raise UnsupportedVersionError(identifier, site=site)
        return strategy

    def supported_identifiers(self) -> list[str]:
        """Return every supported identifier, oldest first."""
        return sorted(self._factories, key=Version)

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and identifier.strip() in self._factories


_DEFAULT: VersionRegistry | None = None
_DEFAULT_LOCK = threading.Lock()


def default_registry() -> VersionRegistry:
    """Return the process-wide registry of built-in strategies."""
    global _DEFAULT
    with _DEFAULT_LOCK:
        if _DEFAULT is None:
            _DEFAULT = VersionRegistry()
        return _DEFAULT


__all__ = ["BUILTIN_FACTORIES", "VersionRegistry", "default_registry"]
