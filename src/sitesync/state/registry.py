"""Helpers for reading site descriptors and recording reconciliation status.

The registry directory (``/var/lib/sitesync/registry`` by default) stores YAML
artifacts: ``sites.yml`` lists the sites to reconcile and ``status.yml``
records the outcome of the latest pass for each of them. Writes are atomic so
a concurrent reader never sees a half-written file.
"""
from __future__ import annotations

import grp
import os
import pwd
import tempfile
import threading
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage sitesync state. Install with `pip install sitesync`."
    ) from exc

from ..models import SharedRuntime, SiteDescriptor, WebContext

SITES_FILE = "sites.yml"
STATUS_FILE = "status.yml"

_SITE_KEYS = {
    "name",
    "root",
    "version",
    "uid",
    "gid",
    "user",
    "group",
    "manual",
    "runtime_instance",
    "disabled",
    "hostname",
    "shutdown_port",
    "shutdown_key",
    "http_port",
    "unpack_wars",
    "auto_deploy",
    "contexts",
}

_RUNTIME_KEYS = {
    "name",
    "root",
    "version",
    "uid",
    "gid",
    "user",
    "group",
    "manual",
    "disabled",
    "shutdown_port",
    "shutdown_key",
    "http_port",
}


class SiteRegistryError(RuntimeError):
    """Raised when registry files are missing or malformed."""


@dataclass(frozen=True)
class SiteRegistry:
    """High-level interface to the YAML registry."""

    root: Path
    sites_root: Path | None = None
    _status_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise SiteRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Site helpers -------------------------------------------------------
    def read_sites(self) -> list[SiteDescriptor]:
        """Return every site declared in ``sites.yml``, in file order."""
        raw_sites = self._read_list("sites")
        sites = [self._build_site(entry, index) for index, entry in enumerate(raw_sites)]
        _reject_duplicates("Site", [site.name for site in sites])
        return sites

    def get_site(self, name: str) -> SiteDescriptor | None:
        """Return the descriptor for *name* if declared."""
        for site in self.read_sites():
            if site.name == name:
                return site
        return None

    def read_shared_runtimes(self) -> list[SharedRuntime]:
        """Return the shared runtimes declared under ``shared_runtimes``.

        Sites may name a ``runtime_instance`` that is not declared here; such
        runtimes are installed by other means and only receive restart marks.
        """
        raw = self._read_list("shared_runtimes")
        runtimes = [self._build_runtime(entry, index) for index, entry in enumerate(raw)]
        _reject_duplicates("Shared runtime", [runtime.name for runtime in runtimes])
        return runtimes

    # Status helpers -----------------------------------------------------
    def read_status(self) -> dict[str, dict[str, Any]]:
        """Return the per-site status mapping from ``status.yml``."""
        data = self.read(STATUS_FILE, default={"sites": {}})
        if not isinstance(data, Mapping):
            return {}
        raw = data.get("sites", {})
        if not isinstance(raw, Mapping):
            return {}
        return {str(key): dict(value) for key, value in raw.items() if isinstance(value, Mapping)}

    def record_result(self, name: str, payload: Mapping[str, object]) -> None:
        """Replace the status entry for site *name*."""
        with self._status_lock:
            status = self.read_status()
            status[name] = dict(payload)
            self.write(STATUS_FILE, {"sites": status})

    # ------------------------------------------------------------------
    def _read_list(self, key: str) -> list[object]:
        data = self.read(SITES_FILE, default={key: []})
        if not isinstance(data, Mapping):
            raise SiteRegistryError(f"{SITES_FILE} must contain a mapping at the top level.")
        raw = data.get(key) or []
        if not isinstance(raw, list):
            raise SiteRegistryError(f"'{key}' in {SITES_FILE} must be a list.")
        return raw

    def _entry_basics(
        self,
        entry: object,
        index: int,
        kind: str,
        allowed: set[str],
    ) -> tuple[Mapping[str, Any], str, str, str, Path]:
        """Validate the keys every entry shares; return it with name, label, version and root."""
        if not isinstance(entry, Mapping):
            raise SiteRegistryError(f"{kind} entry #{index} must be a mapping.")
        unknown = set(entry) - allowed
        if unknown:
            joined = ", ".join(sorted(str(key) for key in unknown))
            raise SiteRegistryError(f"{kind} entry #{index} has unknown keys: {joined}.")

        name = entry.get("name")
        if not isinstance(name, str) or not name.strip() or "/" in name:
            raise SiteRegistryError(f"{kind} entry #{index} needs a valid 'name'.")
        name = name.strip()
        label = f"{kind} '{name}'"

        version = entry.get("version")
        if version is None or isinstance(version, bool):
            raise SiteRegistryError(f"{label} needs a 'version'.")

        root_value = entry.get("root")
        if root_value is None:
            if self.sites_root is None:
                raise SiteRegistryError(f"{label} needs a 'root'.")
            root = self.sites_root / name
        else:
            root = Path(str(root_value)).expanduser()
        if not root.is_absolute():
            raise SiteRegistryError(f"{label} root must be an absolute path.")
        return entry, name, label, str(version).strip(), root

    def _build_site(self, entry: object, index: int) -> SiteDescriptor:
        entry, name, label, version, root = self._entry_basics(entry, index, "Site", _SITE_KEYS)

        contexts_raw = entry.get("contexts") or []
        if not isinstance(contexts_raw, list):
            raise SiteRegistryError(f"{label} contexts must be a list.")

        return SiteDescriptor(
            name=name,
            root=root,
            version=version,
            uid=_resolve_owner(entry, "uid", "user", label),
            gid=_resolve_owner(entry, "gid", "group", label),
            manual=_flag(entry, "manual", label),
            runtime_instance=_optional_str(entry.get("runtime_instance")),
            disabled=_flag(entry, "disabled", label),
            hostname=str(entry.get("hostname", "localhost")),
            shutdown_port=_port(entry, "shutdown_port", 8005, label),
            shutdown_key=str(entry.get("shutdown_key", "SHUTDOWN")),
            http_port=_port(entry, "http_port", 8080, label),
            unpack_wars=_flag(entry, "unpack_wars", label, default=True),
            auto_deploy=_flag(entry, "auto_deploy", label, default=True),
            contexts=tuple(_build_context(item, label) for item in contexts_raw),
        )

    def _build_runtime(self, entry: object, index: int) -> SharedRuntime:
        entry, name, label, version, root = self._entry_basics(
            entry, index, "Shared runtime", _RUNTIME_KEYS
        )
        return SharedRuntime(
            name=name,
            root=root,
            version=version,
            uid=_resolve_owner(entry, "uid", "user", label),
            gid=_resolve_owner(entry, "gid", "group", label),
            manual=_flag(entry, "manual", label),
            disabled=_flag(entry, "disabled", label),
            shutdown_port=_port(entry, "shutdown_port", 8005, label),
            shutdown_key=str(entry.get("shutdown_key", "SHUTDOWN")),
            http_port=_port(entry, "http_port", 8080, label),
        )


def _reject_duplicates(kind: str, names: list[str]) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise SiteRegistryError(f"{kind} '{name}' is declared more than once.")
        seen.add(name)


def _build_context(item: object, label: str) -> WebContext:
    if not isinstance(item, Mapping) or "path" not in item or "doc_base" not in item:
        raise SiteRegistryError(f"{label} contexts need 'path' and 'doc_base'.")
    return WebContext(
        path=str(item["path"]),
        doc_base=str(item["doc_base"]),
        reloadable=bool(item.get("reloadable", False)),
        privileged=bool(item.get("privileged", False)),
    )


def _resolve_owner(entry: Mapping[str, Any], id_key: str, name_key: str, label: str) -> int | None:
    numeric = entry.get(id_key)
    named = entry.get(name_key)
    if numeric is not None and named is not None:
        raise SiteRegistryError(f"{label} sets both '{id_key}' and '{name_key}'.")
    if numeric is not None:
        if isinstance(numeric, bool) or not isinstance(numeric, int) or numeric < 0:
            raise SiteRegistryError(f"{label} {id_key} must be a non-negative integer.")
        return numeric
    if named is None:
        return None
    try:
        if name_key == "user":
            return pwd.getpwnam(str(named)).pw_uid
        return grp.getgrnam(str(named)).gr_gid
    except KeyError as exc:
        raise SiteRegistryError(f"{label} {name_key} '{named}' does not exist.") from exc


def _flag(entry: Mapping[str, Any], key: str, label: str, *, default: bool = False) -> bool:
    value = entry.get(key, default)
    if not isinstance(value, bool):
        raise SiteRegistryError(f"{label} {key} must be true or false.")
    return value


def _port(entry: Mapping[str, Any], key: str, default: int, label: str) -> int:
    value = entry.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or not 0 < value < 65536:
        raise SiteRegistryError(f"{label} {key} must be a TCP port number.")
    return value


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = ["SITES_FILE", "STATUS_FILE", "SiteRegistry", "SiteRegistryError"]
