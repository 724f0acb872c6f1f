"""Layout of a shared runtime's own installation root.

A shared runtime uses the server half of its version's layout: scripts,
configuration, libraries and working directories, without a ``webapps``
tree. Its ``server.xml`` declares one host per enabled site it serves, each
rooted in that site's ``webapps`` directory.
"""
from __future__ import annotations

import dataclasses
from collections.abc import Sequence

from ..actions import GeneratedFile, InstallAction, InstallContext, template_file
from ..errors import UnsupportedOperationError
from .strategy import VersionStrategy

HOSTS_KEY = "hosts"


def shared_strategy(strategy: VersionStrategy) -> VersionStrategy:
    """Return the shared-runtime variant of *strategy*.

    Only release lines that support in-place upgrades have a layout that a
    runtime can share.
    """
    if not strategy.supports_upgrade:
        raise UnsupportedOperationError(
            f"shared runtimes are not supported for version {strategy.identifier}"
        )
    site_layout = strategy.install_files

    def install_files(context: InstallContext, is_upgrade: bool) -> Sequence[InstallAction]:
        # The upgrade layout is the one without the default application.
        return site_layout(context, True)

    return dataclasses.replace(strategy, install_files=install_files, config_files=config_files)


def config_files(context: InstallContext) -> list[GeneratedFile]:
    return [template_file("conf/server.xml", "conf/server-shared.xml.j2", 0o660)]


__all__ = ["HOSTS_KEY", "config_files", "shared_strategy"]
