"""Tests for the sitesync command line interface."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from sitesync import __version__
from sitesync.cli import app
from sitesync.state import SiteRegistry

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _read_operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def _prepare_environment(
    tmp_path: Path,
    versions_root: Path,
    *,
    sites: list[dict[str, object]] | None = None,
    shared_runtimes: list[dict[str, object]] | None = None,
    config_overrides: dict[str, object] | None = None,
) -> dict[str, str]:
    state_dir = tmp_path / "state"
    config: dict[str, object] = {
        "sites_root": str(tmp_path / "sites"),
        "versions_root": str(versions_root),
        "state_dir": str(state_dir),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 1.0,
        "jdk_profile": str(versions_root / "jdk" / "profile.sh"),
        "packages": {"backend": "none"},
        "backups": {"date_suffix": False},
    }
    if config_overrides:
        config.update(config_overrides)
    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")

    registry = SiteRegistry(state_dir / "registry")
    if sites is None:
        sites = [
            {"name": "alpha", "version": "9.0", "uid": os.getuid(), "gid": os.getgid()},
            {
                "name": "beta",
                "version": "10.1",
                "uid": os.getuid(),
                "gid": os.getgid(),
                "runtime_instance": "pool",
            },
        ]
    payload: dict[str, object] = {"sites": sites}
    if shared_runtimes is not None:
        payload["shared_runtimes"] = shared_runtimes
    registry.write("sites.yml", payload)

    return {"SITESYNC_CONFIG_FILE": str(config_file)}


def test_version_option_outputs_package_version(tmp_path: Path, versions_root: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    env = _prepare_environment(tmp_path, versions_root)
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path, versions_root: Path) -> None:
    env = _prepare_environment(tmp_path, versions_root)
    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "Reconcile Tomcat site installation roots" in result.stdout


def test_invalid_config_exits_with_environment_code(tmp_path: Path, versions_root: Path) -> None:
    env = _prepare_environment(tmp_path, versions_root, config_overrides={"bogus": 1})
    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 3
    assert "Configuration error" in result.stdout


def test_reconcile_json_reports_restart_targets(tmp_path: Path, versions_root: Path) -> None:
    env = _prepare_environment(tmp_path, versions_root)

    result = runner.invoke(app, ["reconcile", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["restart"] == ["shared:pool", "site:alpha"]
    results = {entry["site"]: entry for entry in payload["results"]}
    assert results["alpha"]["installed"] is True
    assert results["beta"]["restart_target"] == "shared:pool"
    assert (tmp_path / "sites" / "alpha" / "README.txt").is_file()
    assert os.readlink(tmp_path / "sites" / "beta" / "daemon" / "tomcat") == "../bin/tomcat"

    status = SiteRegistry(tmp_path / "state" / "registry").read_status()
    assert status["alpha"]["status"] == "ok"
    assert status["beta"]["installed"] is True

    operations = _read_operations(tmp_path)
    assert operations[-1]["command"] == "reconcile"
    assert operations[-1]["result"]["status"] == "success"
    assert operations[-1]["result"]["context"] == {"restart": ["shared:pool", "site:alpha"]}

    # A second pass converges without changes.
    again = runner.invoke(app, ["reconcile", "--json"], env=env)
    assert again.exit_code == 0
    assert _extract_json(again.stdout)["restart"] == []


def test_reconcile_table_output(tmp_path: Path, versions_root: Path) -> None:
    env = _prepare_environment(tmp_path, versions_root)

    result = runner.invoke(app, ["reconcile", "alpha"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "installed" in result.stdout
    assert "Restart required: site:alpha" in result.stdout
    assert not (tmp_path / "sites" / "beta").exists()


def test_reconcile_unknown_site_is_rejected(tmp_path: Path, versions_root: Path) -> None:
    env = _prepare_environment(tmp_path, versions_root)

    result = runner.invoke(app, ["reconcile", "gamma"], env=env)

    assert result.exit_code == 2
    assert "Unknown site(s): gamma." in result.stdout
    operations = _read_operations(tmp_path)
    assert operations[-1]["result"]["status"] == "error"
    assert operations[-1]["result"]["rc"] == 2


def test_reconcile_failure_exits_with_reconcile_code(tmp_path: Path, versions_root: Path) -> None:
    sites = [
        {"name": "alpha", "version": "9.0", "uid": os.getuid(), "gid": os.getgid()},
        {"name": "legacy", "version": "5.5"},
    ]
    env = _prepare_environment(tmp_path, versions_root, sites=sites)

    result = runner.invoke(app, ["reconcile", "--json"], env=env)

    assert result.exit_code == 4
    payload = _extract_json(result.stdout)
    failures = [entry for entry in payload["results"] if "error" in entry]
    assert failures == [
        {"site": "legacy", "error": "site 'legacy': unsupported version '5.5'"}
    ]
    assert payload["restart"] == ["site:alpha"]
    status = SiteRegistry(tmp_path / "state" / "registry").read_status()
    assert status["legacy"]["status"] == "error"
    assert status["alpha"]["status"] == "ok"


def test_invalid_registry_is_reported(tmp_path: Path, versions_root: Path) -> None:
    env = _prepare_environment(tmp_path, versions_root, sites=[{"name": "alpha"}])

    result = runner.invoke(app, ["reconcile"], env=env)

    assert result.exit_code == 2
    assert "Invalid site registry" in result.stdout


def test_plan_lists_actions_without_touching_disk(tmp_path: Path, versions_root: Path) -> None:
    env = _prepare_environment(tmp_path, versions_root)

    result = runner.invoke(app, ["plan", "alpha"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "symlink" in result.stdout
    assert not (tmp_path / "sites" / "alpha").exists()
    operations = _read_operations(tmp_path)
    assert operations[-1]["command"] == "plan"
    assert operations[-1]["result"]["context"]["actions"] > 0


def test_sites_list_json_includes_status(tmp_path: Path, versions_root: Path) -> None:
    env = _prepare_environment(tmp_path, versions_root)
    assert runner.invoke(app, ["reconcile", "alpha"], env=env).exit_code == 0

    result = runner.invoke(app, ["sites", "list", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    entries = {entry["name"]: entry for entry in payload["sites"]}
    assert entries["alpha"]["status"]["status"] == "ok"
    assert entries["beta"]["status"] is None
    assert entries["beta"]["runtime_instance"] == "pool"


def test_sites_list_table(tmp_path: Path, versions_root: Path) -> None:
    env = _prepare_environment(tmp_path, versions_root)

    result = runner.invoke(app, ["sites", "list"], env=env)

    assert result.exit_code == 0
    assert "alpha" in result.stdout
    assert "managed" in result.stdout


def test_versions_list_reports_supported_versions(tmp_path: Path, versions_root: Path) -> None:
    env = _prepare_environment(tmp_path, versions_root)

    result = runner.invoke(app, ["versions", "list"], env=env)

    assert result.exit_code == 0
    assert "10.1" in result.stdout
    assert "7.0" in result.stdout


@pytest.mark.parametrize("json_flag", [True, False])
def test_config_show(tmp_path: Path, versions_root: Path, json_flag: bool) -> None:
    env = _prepare_environment(tmp_path, versions_root)
    args = ["config", "show", "--json"] if json_flag else ["config", "show"]

    result = runner.invoke(app, args, env=env)

    assert result.exit_code == 0
    if json_flag:
        payload = _extract_json(result.stdout)
        assert payload["versions_root"] == str(versions_root)
        assert payload["packages"]["backend"] == "none"
        assert payload["registry_dir"] == str(tmp_path / "state" / "registry")
    else:
        assert "lock_timeout" in result.stdout


def test_reconcile_installs_declared_shared_runtime(tmp_path: Path, versions_root: Path) -> None:
    pool = {"name": "pool", "version": "10.1", "uid": os.getuid(), "gid": os.getgid()}
    env = _prepare_environment(tmp_path, versions_root, shared_runtimes=[pool])

    result = runner.invoke(app, ["reconcile", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    results = {entry["site"]: entry for entry in payload["results"]}
    assert results["shared:pool"]["installed"] is True
    assert payload["restart"] == ["shared:pool", "site:alpha"]
    server_xml = (tmp_path / "sites" / "pool" / "conf" / "server.xml").read_text(encoding="utf-8")
    assert f'appBase="{tmp_path / "sites" / "beta"}/webapps"' in server_xml
    assert str(tmp_path / "sites" / "alpha") not in server_xml
    status = SiteRegistry(tmp_path / "state" / "registry").read_status()
    assert status["shared:pool"]["status"] == "ok"

    listed = runner.invoke(app, ["sites", "list", "--json"], env=env)
    runtimes = _extract_json(listed.stdout)["shared_runtimes"]
    assert [entry["name"] for entry in runtimes] == ["pool"]
    assert runtimes[0]["status"]["status"] == "ok"


def test_reconcile_selection_skips_unrelated_shared_runtimes(
    tmp_path: Path, versions_root: Path
) -> None:
    pool = {"name": "pool", "version": "10.1", "uid": os.getuid(), "gid": os.getgid()}
    env = _prepare_environment(tmp_path, versions_root, shared_runtimes=[pool])

    only_alpha = runner.invoke(app, ["reconcile", "alpha", "--json"], env=env)
    assert only_alpha.exit_code == 0, only_alpha.stdout
    assert [entry["site"] for entry in _extract_json(only_alpha.stdout)["results"]] == ["alpha"]
    assert not (tmp_path / "sites" / "pool").exists()

    with_beta = runner.invoke(app, ["reconcile", "beta", "--json"], env=env)
    assert with_beta.exit_code == 0, with_beta.stdout
    sites = [entry["site"] for entry in _extract_json(with_beta.stdout)["results"]]
    assert sites == ["beta", "shared:pool"]


def test_unrecordable_status_downgrades_to_warning(tmp_path: Path, versions_root: Path) -> None:
    env = _prepare_environment(tmp_path, versions_root)
    (tmp_path / "state" / "registry" / "status.yml").write_text("::: not yaml :::\n")

    result = runner.invoke(app, ["reconcile", "alpha"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Could not record status for alpha" in result.stdout
    operations = _read_operations(tmp_path)
    assert operations[-1]["result"]["status"] == "warning"
    assert operations[-1]["lock_wait_ms"] == 0
