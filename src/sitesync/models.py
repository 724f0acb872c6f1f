"""Site descriptors consumed by the reconciler."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True, slots=True)
class WebContext:
    """One web application context served by a site."""

    path: str
    doc_base: str
    reloadable: bool = False
    privileged: bool = False


@dataclass(frozen=True, slots=True)
class SiteDescriptor:
    """Everything the reconciler needs to know about one site.

    ``runtime_instance`` names a shared runtime serving several sites. When it
    is unset the site runs its own dedicated instance.
    """

    name: str
    root: Path
    version: str
    uid: int | None = None
    gid: int | None = None
    manual: bool = False
    runtime_instance: str | None = None
    disabled: bool = False
    hostname: str = "localhost"
    shutdown_port: int = 8005
    shutdown_key: str = "SHUTDOWN"
    http_port: int = 8080
    unpack_wars: bool = True
    auto_deploy: bool = True
    contexts: tuple[WebContext, ...] = field(default_factory=tuple)

    @property
    def restart_target(self) -> str:
        """Return the identifier of the runtime that must restart for this site."""
        if self.runtime_instance:
            return f"shared:{self.runtime_instance}"
        return f"site:{self.name}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "root": str(self.root),
            "version": self.version,
            "uid": self.uid,
            "gid": self.gid,
            "manual": self.manual,
            "runtime_instance": self.runtime_instance,
            "disabled": self.disabled,
            "hostname": self.hostname,
            "shutdown_port": self.shutdown_port,
            "http_port": self.http_port,
            "unpack_wars": self.unpack_wars,
            "auto_deploy": self.auto_deploy,
            "contexts": [
                {
                    "path": context.path,
                    "doc_base": context.doc_base,
                    "reloadable": context.reloadable,
                    "privileged": context.privileged,
                }
                for context in self.contexts
            ],
        }


@dataclass(frozen=True, slots=True)
class SharedRuntime:
    """A runtime instance serving every site that names it in ``runtime_instance``.

    The runtime has its own installation root holding the server layout; the
    hosted sites keep their applications under their own roots.
    """

    name: str
    root: Path
    version: str
    uid: int | None = None
    gid: int | None = None
    manual: bool = False
    disabled: bool = False
    shutdown_port: int = 8005
    shutdown_key: str = "SHUTDOWN"
    http_port: int = 8080

    @property
    def restart_target(self) -> str:
        return f"shared:{self.name}"

    def as_site(self) -> SiteDescriptor:
        """Return the descriptor used to install the runtime's own root."""
        return SiteDescriptor(
            name=self.name,
            root=self.root,
            version=self.version,
            uid=self.uid,
            gid=self.gid,
            manual=self.manual,
            runtime_instance=self.name,
            disabled=self.disabled,
            shutdown_port=self.shutdown_port,
            shutdown_key=self.shutdown_key,
            http_port=self.http_port,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "root": str(self.root),
            "version": self.version,
            "uid": self.uid,
            "gid": self.gid,
            "manual": self.manual,
            "disabled": self.disabled,
            "shutdown_port": self.shutdown_port,
            "http_port": self.http_port,
        }


__all__ = ["SharedRuntime", "SiteDescriptor", "WebContext"]
