"""Layout for release lines older than 8.5.

These lines predate the profile.d layout and cannot be upgraded in place; a
version change means a fresh installation root.
"""
from __future__ import annotations

from collections.abc import Sequence
from functools import partial

from ..actions import (
    Copy,
    GeneratedFile,
    InstallAction,
    InstallContext,
    Mkdir,
    Symlink,
    SymlinkAll,
    template_file,
)
from ..errors import UnsupportedOperationError
from .strategy import VersionStrategy
from .versioned import webapps_skeleton

BIN_LINKS = (
    "bin/bootstrap.jar",
    "bin/catalina.sh",
    "bin/commons-daemon.jar",
    "bin/digest.sh",
    "bin/setclasspath.sh",
    "bin/tomcat-juli.jar",
    "bin/tool-wrapper.sh",
    "bin/version.sh",
)

CONF_COPIES = (
    "conf/catalina.policy",
    "conf/catalina.properties",
    "conf/context.xml",
    "conf/logging.properties",
    "conf/tomcat-users.xml",
    "conf/web.xml",
)


def install_files(
    context: InstallContext,
    is_upgrade: bool,
    *,
    conf_copies: Sequence[str] = CONF_COPIES,
) -> list[InstallAction]:
    """Return the install actions for a legacy release line."""
    if is_upgrade:
        raise UnsupportedOperationError(
            f"in-place upgrade not supported for {context.version_dir}"
        )
    actions: list[InstallAction] = [
        Mkdir("bin", 0o770),
        Mkdir("conf", context.conf_mode),
        Mkdir("conf/Catalina", 0o770),
        Mkdir("daemon", 0o770),
        Mkdir("temp", 0o770),
        Symlink("logs", "var/log"),
        Mkdir("var", 0o770),
        Mkdir("var/log", 0o770),
        Mkdir("var/run", 0o770),
        Mkdir("work", 0o750),
    ]
    actions.extend(Symlink(path) for path in BIN_LINKS)
    actions.extend(
        [
            template_file("bin/profile", "scripts/profile-legacy.sh.j2", 0o750),
            template_file("bin/tomcat", "scripts/tomcat-legacy.sh.j2", 0o700),
            template_file("bin/shutdown.sh", "scripts/shutdown.sh.j2", 0o700),
            template_file("bin/startup.sh", "scripts/startup.sh.j2", 0o700),
            Mkdir("lib", 0o770),
            SymlinkAll("lib"),
        ]
    )
    actions.extend(Copy(path, 0o660) for path in conf_copies)
    actions.extend(webapps_skeleton())
    return actions


def config_files(context: InstallContext) -> list[GeneratedFile]:
    return [template_file("conf/server.xml", "conf/server-legacy.xml.j2", 0o660)]


def build_strategy(identifier: str, *, extra_conf_copies: Sequence[str] = ()) -> VersionStrategy:
    """Return the strategy for a legacy release line."""
    version_dir = f"apache-tomcat-{identifier}"
    return VersionStrategy(
        identifier=identifier,
        version_dir=version_dir,
        package_name=version_dir,
        install_files=partial(install_files, conf_copies=(*CONF_COPIES, *extra_conf_copies)),
        config_files=config_files,
        required_packages=(version_dir,),
    )


__all__ = ["build_strategy", "config_files", "install_files"]
