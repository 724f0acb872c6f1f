"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from sitesync.config import AppConfig, load_config
from sitesync.locking import LockManager
from sitesync.models import SiteDescriptor
from sitesync.packages import PackageProvider
from sitesync.reconcile import Reconciler
from sitesync.restart import RestartAggregator
from sitesync.templates import TemplateEngine

VERSIONED_LIBS = ("catalina.jar", "servlet-api.jar", "tomcat-i18n-ru.jar")
LEGACY_CONF_COPIES = (
    "catalina.policy",
    "catalina.properties",
    "context.xml",
    "logging.properties",
    "tomcat-users.xml",
    "web.xml",
)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def _populate_version(directory: Path, *, legacy: bool) -> None:
    (directory / "lib").mkdir(parents=True)
    for name in VERSIONED_LIBS:
        (directory / "lib" / name).write_bytes(b"jar")
    conf = directory / "conf"
    conf.mkdir()
    (conf / "tomcat-users.xml").write_text("<tomcat-users/>\n", encoding="utf-8")
    web_inf = directory / "webapps" / "ROOT" / "WEB-INF"
    web_inf.mkdir(parents=True)
    (web_inf / "web.xml").write_text("<web-app/>\n", encoding="utf-8")
    if legacy:
        for name in LEGACY_CONF_COPIES:
            (conf / name).write_text(f"# {name}\n", encoding="utf-8")
    else:
        (directory / "RELEASE-NOTES").write_text(
            f"Apache Tomcat {directory.name.removeprefix('apache-tomcat-')}.0\n", encoding="utf-8"
        )


@pytest.fixture
def versions_root(tmp_path: Path) -> Path:
    """A versions base holding skeletal 7.0, 9.0 and 10.1 directories."""
    root = tmp_path / "opt"
    _populate_version(root / "apache-tomcat-7.0", legacy=True)
    _populate_version(root / "apache-tomcat-9.0", legacy=False)
    _populate_version(root / "apache-tomcat-10.1", legacy=False)
    (root / "jdk").mkdir()
    (root / "jdk" / "profile.sh").write_text("export JAVA_HOME=/opt/jdk\n", encoding="utf-8")
    return root


@pytest.fixture
def app_config(tmp_path: Path, versions_root: Path) -> AppConfig:
    """Configuration isolated under *tmp_path* with package checks disabled."""
    return load_config(
        config_file=tmp_path / "config.yml",
        env={},
        overrides={
            "sites_root": str(tmp_path / "sites"),
            "versions_root": str(versions_root),
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "lock_timeout": 1.0,
            "jdk_profile": str(versions_root / "jdk" / "profile.sh"),
            "packages": {"backend": "none"},
            "backups": {"date_suffix": False},
        },
    )


@pytest.fixture
def make_site(tmp_path: Path) -> Callable[..., SiteDescriptor]:
    """Return a factory for descriptors owned by the current user."""

    def factory(name: str = "alpha", version: str = "9.0", **kwargs: object) -> SiteDescriptor:
        kwargs.setdefault("root", tmp_path / "sites" / name)
        kwargs.setdefault("uid", os.getuid())
        kwargs.setdefault("gid", os.getgid())
        return SiteDescriptor(name=name, version=version, **kwargs)  # type: ignore[arg-type]

    return factory


@pytest.fixture
def reconciler(app_config: AppConfig) -> Reconciler:
    """A reconciler wired to the isolated configuration."""
    return Reconciler(
        config=app_config,
        templates=TemplateEngine.with_overrides(app_config.templates_dir),
        packages=PackageProvider(app_config.packages.backend),
        locks=LockManager(app_config.runtime_dir, app_config.lock_timeout),
        aggregator=RestartAggregator(),
    )
