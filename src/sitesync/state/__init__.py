"""Persistent site registry and status records."""
from __future__ import annotations

from .registry import SITES_FILE, STATUS_FILE, SiteRegistry, SiteRegistryError

__all__ = ["SITES_FILE", "STATUS_FILE", "SiteRegistry", "SiteRegistryError"]
