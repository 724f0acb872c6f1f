"""Version strategies and the registry that selects them."""
from __future__ import annotations

from .registry import VersionRegistry, default_registry
from .strategy import VersionStrategy
from .upgrade import UpgradeSymlink, UpgradeTable, parse_release

__all__ = [
    "UpgradeSymlink",
    "UpgradeTable",
    "VersionRegistry",
    "VersionStrategy",
    "default_registry",
    "parse_release",
]
