"""Tests for install actions and plan application."""
from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from sitesync.actions import (
    Copy,
    Delete,
    GeneratedFile,
    InstallContext,
    Mkdir,
    Symlink,
    SymlinkAll,
    normalize_relative,
    template_file,
)
from sitesync.atomic import AtomicWriter
from sitesync.errors import PathEscapeError, PermissionDeniedError, SiteSyncError
from sitesync.models import SiteDescriptor
from sitesync.plan import InstallPlan, PlanOrderError
from sitesync.templates import TemplateEngine


def _context(site: SiteDescriptor, versions_root: Path, version_dir: str = "apache-tomcat-9.0") -> InstallContext:
    return InstallContext(
        site=site,
        version_dir=version_dir,
        versions_root=versions_root,
        templates=TemplateEngine(),
    )


@pytest.mark.parametrize("path", ["", "/etc/passwd", "..", "../outside", "conf/../../x", "."])
def test_normalize_relative_rejects_escapes(path: str) -> None:
    with pytest.raises(PathEscapeError):
        normalize_relative(path)


def test_normalize_relative_collapses_segments() -> None:
    assert normalize_relative("conf/./Catalina/") == "conf/Catalina"
    assert normalize_relative("bin/../lib") == "lib"


def test_actions_reject_escaping_paths() -> None:
    with pytest.raises(PathEscapeError):
        Mkdir("../var")
    with pytest.raises(PathEscapeError):
        Symlink("/bin/catalina.sh")


def test_plan_rejects_directory_after_children() -> None:
    with pytest.raises(PlanOrderError):
        InstallPlan.of([Symlink("conf/web.xml"), Mkdir("conf", 0o775)])


def test_plan_accepts_parent_first() -> None:
    plan = InstallPlan.of([Mkdir("conf", 0o775), Symlink("conf/web.xml")])

    assert [action.kind for action in plan] == ["mkdir", "symlink"]
    assert len(plan) == 2


def test_generated_file_scenario_is_idempotent(
    tmp_path: Path,
    versions_root: Path,
    make_site: Callable[..., SiteDescriptor],
) -> None:
    site = make_site("site1", root=tmp_path / "srv" / "site1")
    site.root.mkdir(parents=True)
    context = _context(site, versions_root)
    plan = InstallPlan.of(
        [
            Mkdir("conf", 0o775),
            GeneratedFile("conf/app.xml", 0o660, lambda _ctx: b"<config/>"),
        ]
    )

    first = plan.apply(context, AtomicWriter())
    app_xml = site.root / "conf" / "app.xml"
    mtime = app_xml.stat().st_mtime_ns
    second = plan.apply(context, AtomicWriter())

    assert first.any_changed
    assert first.changed == ("conf", "conf/app.xml")
    assert not second.any_changed
    assert app_xml.read_bytes() == b"<config/>"
    assert app_xml.stat().st_mode & 0o777 == 0o660
    assert (site.root / "conf").stat().st_mode & 0o777 == 0o775
    assert app_xml.stat().st_mtime_ns == mtime


def test_symlink_targets_derive_from_version_dir(
    tmp_path: Path,
    versions_root: Path,
    make_site: Callable[..., SiteDescriptor],
) -> None:
    site = make_site()
    site.root.mkdir(parents=True)
    context = _context(site, versions_root)

    InstallPlan.of([Mkdir("bin"), Symlink("bin/bootstrap.jar"), Symlink("logs", "var/log")]).apply(
        context, AtomicWriter()
    )

    expected = os.path.relpath(versions_root, site.root) + "/apache-tomcat-9.0/bin/bootstrap.jar"
    assert os.readlink(site.root / "bin" / "bootstrap.jar") == f"../{expected}"
    assert os.readlink(site.root / "logs") == "var/log"
    # The relative target resolves to the real version file location.
    resolved = (site.root / "bin" / os.readlink(site.root / "bin" / "bootstrap.jar")).resolve()
    assert resolved == (versions_root / "apache-tomcat-9.0" / "bin" / "bootstrap.jar").resolve()


def test_symlink_all_and_copy(
    versions_root: Path,
    make_site: Callable[..., SiteDescriptor],
) -> None:
    site = make_site()
    site.root.mkdir(parents=True)
    context = _context(site, versions_root)
    plan = InstallPlan.of(
        [Mkdir("lib"), SymlinkAll("lib"), Mkdir("conf", 0o775), Copy("conf/tomcat-users.xml", 0o660)]
    )

    plan.apply(context, AtomicWriter())

    for name in ("catalina.jar", "servlet-api.jar"):
        link = site.root / "lib" / name
        assert link.is_symlink()
        assert link.resolve() == (versions_root / "apache-tomcat-9.0" / "lib" / name).resolve()
    users = site.root / "conf" / "tomcat-users.xml"
    assert not users.is_symlink()
    assert users.read_text(encoding="utf-8") == "<tomcat-users/>\n"
    assert users.stat().st_mode & 0o777 == 0o660


def test_template_file_renders_with_site_values(
    versions_root: Path,
    make_site: Callable[..., SiteDescriptor],
) -> None:
    site = make_site()
    context = _context(site, versions_root)

    action = template_file("bin/profile.d/java-heapsize.sh", "profile.d/java-heapsize.sh.j2", heap_size="256M")

    assert b"256M" in action.content(context)
    assert action.mode == 0o640


def test_delete_backs_up_and_is_stable(
    versions_root: Path,
    make_site: Callable[..., SiteDescriptor],
) -> None:
    site = make_site()
    site.root.mkdir(parents=True)
    (site.root / "RELEASE-NOTES").write_text("notes")
    context = _context(site, versions_root)
    plan = InstallPlan.of([Delete("RELEASE-NOTES")])

    assert plan.apply(context, AtomicWriter()).changed == ("RELEASE-NOTES",)
    assert plan.apply(context, AtomicWriter()).changed == ()
    assert (site.root / "RELEASE-NOTES.0.bak").read_text() == "notes"


def test_failure_stamps_action_path_and_keeps_earlier_work(
    versions_root: Path,
    make_site: Callable[..., SiteDescriptor],
) -> None:
    site = make_site()
    site.root.mkdir(parents=True)
    context = _context(site, versions_root)

    def explode(_ctx: InstallContext) -> bytes:
        raise PermissionDeniedError("permission denied")

    plan = InstallPlan.of(
        [Mkdir("conf", 0o775), GeneratedFile("conf/server.xml", 0o660, explode), Mkdir("work")]
    )

    with pytest.raises(SiteSyncError) as excinfo:
        plan.apply(context, AtomicWriter())

    assert excinfo.value.path == "conf/server.xml"
    assert str(excinfo.value) == "conf/server.xml: permission denied"
    assert (site.root / "conf").is_dir()
    assert not (site.root / "work").exists()


def test_opt_prefix_is_relative_to_root(
    tmp_path: Path,
    make_site: Callable[..., SiteDescriptor],
) -> None:
    site = make_site(root=tmp_path / "var" / "opt" / "apache-tomcat" / "alpha")
    context = _context(site, tmp_path / "opt")

    assert context.opt_prefix == "../../../../opt/"
    assert context.derived_target("conf/web.xml") == "../../../../../opt/apache-tomcat-9.0/conf/web.xml"
