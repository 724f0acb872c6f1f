"""Version strategies: one value per supported release line."""
from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from ..actions import GeneratedFile, InstallAction, InstallContext
from ..atomic import AtomicWriter
from ..drift import ManualDriftResolver
from ..errors import SiteSyncError, UnsupportedOperationError
from ..plan import InstallPlan, PlanResult
from .upgrade import UpgradeTable, expand_targets, parse_release

LOGGER = logging.getLogger(__name__)

InstallFiles = Callable[[InstallContext, bool], Sequence[InstallAction]]
ConfigFiles = Callable[[InstallContext], Sequence[GeneratedFile]]
UpgradeFiles = Callable[[InstallContext], Sequence[InstallAction]]
ReadmeGenerator = Callable[[InstallContext], bytes]


@dataclass(frozen=True, slots=True)
class VersionStrategy:
    """Install, rebuild and upgrade behaviour for one version identifier.

    Versions without a README generator cannot detect or perform in-place
    upgrades; asking them to do so raises :class:`UnsupportedOperationError`.
    """

    identifier: str
    version_dir: str
    package_name: str
    install_files: InstallFiles
    config_files: ConfigFiles
    readme: ReadmeGenerator | None = None
    upgrade_table: UpgradeTable | None = None
    upgrade_files: UpgradeFiles | None = None
    required_packages: tuple[str, ...] = ()

    @property
    def supports_upgrade(self) -> bool:
        return self.readme is not None

    def install_plan(self, context: InstallContext, is_upgrade: bool = False) -> InstallPlan:
        """Return the full file layout for this version."""
        if is_upgrade and not self.supports_upgrade:
            raise UnsupportedOperationError(
                f"in-place upgrade not supported for version {self.identifier}"
            )
        return InstallPlan.of(self.install_files(context, is_upgrade))

    def build_installation_contents(
        self,
        context: InstallContext,
        writer: AtomicWriter,
        is_upgrade: bool,
    ) -> PlanResult:
        """Provision (or re-provision) the installation root."""
        plan = self.install_plan(context, is_upgrade)
        LOGGER.debug(
            "Applying %d actions for %s (version %s, upgrade=%s).",
            len(plan),
            context.site.name,
            self.identifier,
            is_upgrade,
        )
        return plan.apply(context, writer)

    def readme_bytes(self, context: InstallContext) -> bytes | None:
        return self.readme(context) if self.readme is not None else None

    def generated_artifacts(self, context: InstallContext) -> list[GeneratedFile]:
        """Return every generated file of the layout, configuration last."""
        layout = [
            action
            for action in self.install_files(context, False)
            if isinstance(action, GeneratedFile)
        ]
        return [*layout, *self.config_files(context)]

    def rebuild_generated_artifacts(
        self,
        context: InstallContext,
        writer: AtomicWriter,
        resolver: ManualDriftResolver,
    ) -> bool:
        """Regenerate every generated file; return True when any changed.

        Manual sites keep their existing files; only the generated banner is
        stripped from them. Of the files a manual site lacks, only the
        configuration files are written back.
        """
        changed = False
        config_paths = {artifact.path for artifact in self.config_files(context)}
        for artifact in self.generated_artifacts(context):
            target = context.resolve(artifact.path)
            if context.site.manual:
                if os.path.lexists(target):
                    resolver.resolve(target)
                    continue
                if artifact.path not in config_paths:
                    LOGGER.debug("Skipping %s for manual site %s.", artifact.path, context.site.name)
                    continue
            try:
                outcome = artifact.apply(context, writer)
            except SiteSyncError as exc:
                exc.path = artifact.path
                raise
            if outcome.changed:
                LOGGER.info("Regenerated %s for %s.", artifact.path, context.site.name)
                changed = True
        return changed

    def upgrade_in_place(
        self,
        context: InstallContext,
        writer: AtomicWriter,
        release: str | None,
    ) -> bool:
        """Refresh the release marker files and apply the upgrade table.

        A changed marker file reveals a patch release that swaps no links.
        The table only applies when the installed *release* is known.
        """
        needs_restart = False
        if self.upgrade_files is not None:
            for action in self.upgrade_files(context):
                try:
                    outcome = action.apply(context, writer)
                except SiteSyncError as exc:
                    exc.path = action.path
                    raise
                if outcome.changed:
                    LOGGER.info("Refreshed %s for %s.", action.path, context.site.name)
                    needs_restart = True
        if self.upgrade_table is None or release is None:
            return needs_restart
        tomcat_prefix = f"../{context.opt_prefix}{self.version_dir}"
        swaps = expand_targets(self.upgrade_table.symlinks_for(parse_release(release)), tomcat_prefix)
        for swap in swaps:
            if swap.apply(context.root, writer, context.uid, context.gid):
                needs_restart = True
        return needs_restart


__all__ = ["ConfigFiles", "InstallFiles", "ReadmeGenerator", "UpgradeFiles", "VersionStrategy"]
