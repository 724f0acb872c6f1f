"""Layout shared by the 8.5 and later release lines.

Every release line in this family uses the same layout so sites can move
between them in either direction; only the set of wrapped scripts differs.
"""
from __future__ import annotations

import os
from collections.abc import Sequence
from functools import partial

from ..actions import (
    Copy,
    Delete,
    GeneratedFile,
    InstallAction,
    InstallContext,
    Mkdir,
    Symlink,
    SymlinkAll,
    profile_script,
    template_file,
)
from .strategy import VersionStrategy
from .upgrade import UpgradeTable

HEAP_SIZE = "128M"
KILL_DELAY_ATTEMPTS = 50
KILL_DELAY_INTERVAL = 0.1
PROFILE_PACKAGE = "sitesync-profile"

BASE_PROFILE_SCRIPTS = (
    "bin/catalina.sh",
    "bin/ciphers.sh",
    "bin/configtest.sh",
    "bin/digest.sh",
)


def jdk_profile_target(context: InstallContext) -> str:
    """Return the link target for ``bin/profile.d/jdk.sh``."""
    relative = os.path.relpath(context.jdk_profile, context.versions_root)
    return f"../../{context.opt_prefix}{relative}"


def install_files(
    context: InstallContext,
    is_upgrade: bool,
    *,
    profile_scripts: Sequence[str] = BASE_PROFILE_SCRIPTS,
) -> list[InstallAction]:
    """Return the install actions for a versioned release line."""
    actions: list[InstallAction] = [
        Mkdir("bin", 0o770),
        Symlink("bin/bootstrap.jar"),
        Symlink("bin/commons-daemon.jar"),
        Delete("bin/commons-logging-api.jar"),
        Delete("bin/jasper.sh"),
        Delete("bin/jspc.sh"),
        Delete("bin/profile"),
    ]
    actions.extend(profile_script(path) for path in sorted(profile_scripts))
    actions.extend(
        [
            Mkdir("bin/profile.d", 0o750),
            template_file("bin/profile.d/catalina.sh", "profile.d/catalina.sh.j2"),
            template_file(
                "bin/profile.d/java-disable-usage-tracking.sh",
                "profile.d/java-disable-usage-tracking.sh.j2",
            ),
            template_file("bin/profile.d/java-headless.sh", "profile.d/java-headless.sh.j2"),
            template_file(
                "bin/profile.d/java-heapsize.sh",
                "profile.d/java-heapsize.sh.j2",
                heap_size=HEAP_SIZE,
            ),
            template_file("bin/profile.d/java-server.sh", "profile.d/java-server.sh.j2"),
            Symlink("bin/profile.d/jdk.sh", jdk_profile_target(context)),
            template_file("bin/profile.d/umask.sh", "profile.d/umask.sh.j2"),
            Symlink("bin/setclasspath.sh"),
            template_file("bin/shutdown.sh", "scripts/shutdown.sh.j2", 0o700),
            template_file("bin/startup.sh", "scripts/startup.sh.j2", 0o700),
            Delete("bin/tomcat-jni.jar"),
            Symlink("bin/tomcat-juli.jar"),
            Symlink("bin/tool-wrapper.sh"),
            profile_script("bin/version.sh"),
            template_file(
                "bin/tomcat",
                "scripts/tomcat-versioned.sh.j2",
                0o700,
                kill_attempts=KILL_DELAY_ATTEMPTS,
                kill_interval=KILL_DELAY_INTERVAL,
            ),
            Delete("common"),
            Mkdir("conf", context.conf_mode),
            Mkdir("conf/Catalina", 0o770),
            Symlink("conf/catalina.policy"),
            Symlink("conf/catalina.properties"),
            Symlink("conf/context.xml"),
            Symlink("conf/jaspic-providers.xml"),
            Symlink("conf/jaspic-providers.xsd"),
            Symlink("conf/logging.properties"),
            # Moved aside here; regenerated with the other config files.
            Delete("conf/server.xml"),
            Copy("conf/tomcat-users.xml", 0o660),
            Symlink("conf/tomcat-users.xsd"),
            Symlink("conf/web.xml"),
            Mkdir("daemon", 0o770),
            Mkdir("lib", 0o770),
            SymlinkAll("lib"),
            Symlink("logs", "var/log"),
            # Moved aside here; copied back fresh on every pass.
            Delete("RELEASE-NOTES"),
            Delete("shared"),
            Delete("server"),
            Mkdir("temp", 0o770),
            Mkdir("var", 0o770),
            Mkdir("var/log", 0o770),
            Mkdir("var/run", 0o770),
            Mkdir("work", 0o750),
            Mkdir("work/Catalina", 0o750),
            Delete("conf/Tomcat-Apache"),
        ]
    )
    if not is_upgrade:
        actions.extend(webapps_skeleton())
    return actions


def webapps_skeleton() -> list[InstallAction]:
    """Return the default ROOT application created on first install."""
    return [
        Mkdir("webapps", 0o775),
        Mkdir("webapps/ROOT", 0o775),
        Mkdir("webapps/ROOT/WEB-INF", 0o775),
        Mkdir("webapps/ROOT/WEB-INF/classes", 0o770),
        Mkdir("webapps/ROOT/WEB-INF/lib", 0o770),
        Copy("webapps/ROOT/WEB-INF/web.xml", 0o660),
    ]


def config_files(context: InstallContext) -> list[GeneratedFile]:
    return [template_file("conf/server.xml", "conf/server-versioned.xml.j2", 0o660)]


def readme(context: InstallContext) -> bytes:
    return context.render("README.txt.j2")


def upgrade_files(context: InstallContext) -> list[InstallAction]:
    return [Copy("RELEASE-NOTES", 0o440)]


def build_strategy(
    identifier: str,
    *,
    extra_profile_scripts: Sequence[str] = (),
    upgrade_table: UpgradeTable | None = None,
) -> VersionStrategy:
    """Return the strategy for a versioned release line."""
    version_dir = f"apache-tomcat-{identifier}"
    scripts = (*BASE_PROFILE_SCRIPTS, *extra_profile_scripts)
    return VersionStrategy(
        identifier=identifier,
        version_dir=version_dir,
        package_name=version_dir,
        install_files=partial(install_files, profile_scripts=scripts),
        config_files=config_files,
        readme=readme,
        upgrade_table=upgrade_table,
        upgrade_files=upgrade_files,
        required_packages=(PROFILE_PACKAGE, version_dir),
    )


__all__ = [
    "build_strategy",
    "config_files",
    "install_files",
    "jdk_profile_target",
    "readme",
    "upgrade_files",
    "webapps_skeleton",
]
