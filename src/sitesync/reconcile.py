"""Site reconciliation: converge each installation root to its declared state.

A pass over one site selects the version strategy, checks the required
packages, then under the site lock provisions or upgrades the root,
regenerates configuration and toggles the enable link. Whether the site's
runtime must restart is reported to a shared :class:`RestartAggregator`.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from functools import partial

from .actions import InstallContext
from .atomic import AtomicWriter
from .backups import BackupNamer
from .config import AppConfig
from .drift import ManualDriftResolver
from .errors import SiteSyncError, translate_os_error
from .locking import LockManager
from .models import SharedRuntime, SiteDescriptor
from .packages import PackageProvider
from .plan import InstallPlan
from .restart import RestartAggregator
from .templates import TemplateEngine
from .versions import VersionRegistry, VersionStrategy, default_registry
from .versions.shared import HOSTS_KEY, shared_strategy

LOGGER = logging.getLogger(__name__)

README_PATH = "README.txt"
README_MODE = 0o440
CONTROL_LINK = "daemon/tomcat"
CONTROL_TARGET = "../bin/tomcat"
CONTROL_SCRIPT = "bin/tomcat"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of one successful pass over a site."""

    site: str
    restart_required: bool
    restart_target: str
    installed: bool = False
    upgraded: bool = False
    regenerated: bool = False
    changed: tuple[str, ...] = ()
    backups: tuple[str, ...] = ()
    lock_wait_ms: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "site": self.site,
            "restart_required": self.restart_required,
            "restart_target": self.restart_target,
            "installed": self.installed,
            "upgraded": self.upgraded,
            "regenerated": self.regenerated,
            "changed": list(self.changed),
            "backups": list(self.backups),
            "lock_wait_ms": self.lock_wait_ms,
        }


@dataclass(frozen=True)
class SiteOutcome:
    """Result or failure of one site within a batch."""

    site: str
    result: ReconciliationResult | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Reconciler:
    """Reconcile sites against the configured versions and templates."""

    config: AppConfig
    templates: TemplateEngine
    packages: PackageProvider
    locks: LockManager
    aggregator: RestartAggregator = field(default_factory=RestartAggregator)
    versions: VersionRegistry = field(default_factory=default_registry)
    namer_factory: Callable[[], BackupNamer] | None = None

    def new_writer(self) -> AtomicWriter:
        """Return a writer using the configured backup naming policy."""
        if self.namer_factory is not None:
            return AtomicWriter(self.namer_factory())
        backups = self.config.backups
        if backups.date_suffix:
            namer = BackupNamer.dated(
                separator=backups.separator,
                extension=backups.extension,
                limit=backups.max_sequence,
            )
        else:
            namer = BackupNamer(
                separator=backups.separator,
                extension=backups.extension,
                limit=backups.max_sequence,
            )
        return AtomicWriter(namer)

    def context_for(self, site: SiteDescriptor, strategy: VersionStrategy) -> InstallContext:
        """Return the install context of *site* under *strategy*."""
        banner = "" if site.manual else self._render_banner("banners/auto_warning.xml.j2", site)
        return InstallContext(
            site=site,
            version_dir=strategy.version_dir,
            versions_root=self.config.versions_root,
            templates=self.templates,
            jdk_profile=self.config.jdk_profile,
            banner=banner,
            conf_mode=self.config.defaults.conf_mode,
            backup_extension=self.config.backups.extension,
        )

    def resolver_for(self, site: SiteDescriptor) -> ManualDriftResolver:
        """Return the banner stripper for *site*, legacy banner first."""
        legacy = self._render_banner("banners/auto_warning_old.xml.j2", site)
        current = self._render_banner("banners/auto_warning.xml.j2", site)
        return ManualDriftResolver.from_texts([legacy, current, XML_DECLARATION + current])

    def plan_for(self, site: SiteDescriptor, *, is_upgrade: bool = False) -> InstallPlan:
        """Return the layout that a fresh install (or upgrade) of *site* applies."""
        try:
            strategy = self.versions.select_strategy(site.version, site=site.name)
            return strategy.install_plan(self.context_for(site, strategy), is_upgrade)
        except SiteSyncError as exc:
            _stamp_site(exc, site)
            raise

    def reconcile(self, site: SiteDescriptor, is_upgrade: bool = False) -> ReconciliationResult:
        """Converge *site*; errors carry the site name."""
        try:
            strategy = self.versions.select_strategy(site.version, site=site.name)
            self.packages.require(
                [self.config.packages.jdk_package, *strategy.required_packages],
                site=site.name,
            )
            with self.locks.site_lock(site.name) as handle:
                if handle.wait_ms:
                    LOGGER.info("Waited %dms for the lock of %s.", handle.wait_ms, site.name)
                result = replace(
                    self._reconcile_locked(site, strategy, is_upgrade), lock_wait_ms=handle.wait_ms
                )
        except SiteSyncError as exc:
            _stamp_site(exc, site)
            raise
        if result.restart_required:
            self.aggregator.mark_dirty(result.restart_target)
        return result

    def reconcile_many(
        self,
        sites: Iterable[SiteDescriptor],
        *,
        is_upgrade: bool = False,
        jobs: int = 1,
    ) -> list[SiteOutcome]:
        """Reconcile *sites* concurrently; one failure does not stop the rest."""
        return _run_batch(
            [(site.name, partial(self.reconcile, site, is_upgrade)) for site in sites], jobs
        )

    def reconcile_runtime(
        self,
        runtime: SharedRuntime,
        sites: Iterable[SiteDescriptor],
        is_upgrade: bool = False,
    ) -> ReconciliationResult:
        """Converge the installation root of a shared *runtime*.

        Its ``server.xml`` lists every enabled site among *sites* that names
        the runtime. Errors carry the runtime's restart target as the site.
        """
        descriptor = runtime.as_site()
        hosts = tuple(
            site for site in sites if site.runtime_instance == runtime.name and not site.disabled
        )
        try:
            strategy = shared_strategy(
                self.versions.select_strategy(runtime.version, site=runtime.restart_target)
            )
            self.packages.require(
                [self.config.packages.jdk_package, *strategy.required_packages],
                site=runtime.restart_target,
            )
            context = replace(
                self.context_for(descriptor, strategy),
                extra={HOSTS_KEY: hosts},
            )
            with self.locks.site_lock(f"shared.{runtime.name}") as handle:
                if handle.wait_ms:
                    LOGGER.info("Waited %dms for the lock of %s.", handle.wait_ms, runtime.restart_target)
                result = self._reconcile_locked(descriptor, strategy, is_upgrade, context)
        except SiteSyncError as exc:
            if exc.site is None:
                exc.site = runtime.restart_target
            raise
        result = replace(result, site=runtime.restart_target, lock_wait_ms=handle.wait_ms)
        if result.restart_required:
            self.aggregator.mark_dirty(result.restart_target)
        return result

    def reconcile_runtimes(
        self,
        runtimes: Iterable[SharedRuntime],
        sites: Iterable[SiteDescriptor],
        *,
        is_upgrade: bool = False,
        jobs: int = 1,
    ) -> list[SiteOutcome]:
        """Reconcile shared *runtimes*, isolating failures like :meth:`reconcile_many`."""
        hosted = list(sites)
        return _run_batch(
            [
                (
                    runtime.restart_target,
                    partial(self.reconcile_runtime, runtime, hosted, is_upgrade),
                )
                for runtime in runtimes
            ],
            jobs,
        )

    # ------------------------------------------------------------------
    def _reconcile_locked(
        self,
        site: SiteDescriptor,
        strategy: VersionStrategy,
        is_upgrade: bool,
        context: InstallContext | None = None,
    ) -> ReconciliationResult:
        writer = self.new_writer()
        if context is None:
            context = self.context_for(site, strategy)
        changed: list[str] = []
        restart = False

        installed = _is_fresh(site.root)
        if installed:
            LOGGER.info("Installing %s (version %s) into %s.", site.name, strategy.identifier, site.root)
            try:
                os.makedirs(site.root.parent, exist_ok=True)
            except OSError as exc:
                raise translate_os_error(exc, site.root.parent) from exc
        writer.ensure_directory(site.root, self.config.defaults.root_mode, site.uid, site.gid)

        readme = strategy.readme_bytes(context)
        upgrade = is_upgrade
        if not installed and not site.manual and readme is not None:
            upgrade = upgrade or _readme_differs(context.resolve(README_PATH), readme)
        if upgrade and not installed:
            LOGGER.info("Upgrading %s to version %s.", site.name, strategy.identifier)

        if installed or upgrade:
            built = strategy.build_installation_contents(context, writer, upgrade and not installed)
            changed.extend(built.changed)
            if readme is not None:
                outcome = writer.write_file(
                    context.resolve(README_PATH), readme, README_MODE, site.uid, site.gid
                )
                if outcome.changed:
                    changed.append(README_PATH)
            restart = True

        upgraded = upgrade and not installed
        if not site.manual:
            release = self.packages.installed_version(strategy.package_name)
            if strategy.upgrade_in_place(context, writer, release):
                upgraded = upgraded or not installed
                restart = True

        regenerated = strategy.rebuild_generated_artifacts(context, writer, self.resolver_for(site))
        if regenerated:
            restart = True

        if self._apply_control_link(context, writer):
            changed.append(CONTROL_LINK)

        return ReconciliationResult(
            site=site.name,
            restart_required=restart,
            restart_target=site.restart_target,
            installed=installed,
            upgraded=upgraded,
            regenerated=regenerated,
            changed=tuple(changed),
            backups=tuple(writer.backups),
        )

    def _apply_control_link(self, context: InstallContext, writer: AtomicWriter) -> bool:
        link = context.resolve(CONTROL_LINK)
        try:
            if context.site.disabled:
                return writer.delete(link).changed
            if context.site.manual and not os.path.lexists(context.resolve(CONTROL_SCRIPT)):
                LOGGER.warning(
                    "Not enabling manual site %s: %s is missing.", context.site.name, CONTROL_SCRIPT
                )
                return False
            return writer.ensure_symlink(link, CONTROL_TARGET, context.uid, context.gid).changed
        except SiteSyncError as exc:
            exc.path = CONTROL_LINK
            raise

    def _render_banner(self, template: str, site: SiteDescriptor) -> str:
        return self.templates.render_to_string(template, {"site": site})


def _run_batch(
    calls: list[tuple[str, Callable[[], ReconciliationResult]]],
    jobs: int,
) -> list[SiteOutcome]:
    def run(item: tuple[str, Callable[[], ReconciliationResult]]) -> SiteOutcome:
        label, call = item
        try:
            return SiteOutcome(label, result=call())
        except Exception as exc:
            LOGGER.exception("Reconciliation of %s failed: %s", label, exc)
            return SiteOutcome(label, error=exc)

    if jobs <= 1 or len(calls) <= 1:
        return [run(item) for item in calls]
    with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="sitesync") as pool:
        return list(pool.map(run, calls))


def _is_fresh(root: os.PathLike[str]) -> bool:
    """Return True when *root* is absent or an empty directory."""
    if not os.path.lexists(root):
        return True
    if not os.path.isdir(root) or os.path.islink(root):
        return False
    with os.scandir(root) as entries:
        return next(entries, None) is None


def _readme_differs(path: os.PathLike[str], expected: bytes) -> bool:
    try:
        with open(path, "rb") as handle:
            return handle.read() != expected
    except OSError:
        return True


def _stamp_site(exc: SiteSyncError, site: SiteDescriptor) -> None:
    if exc.site is None:
        exc.site = site.name


__all__ = ["Reconciler", "ReconciliationResult", "SiteOutcome"]
