"""Tests for the tomcatctl CLI."""
from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from tomcatctl import __version__
from tomcatctl.cli import app
from tomcatctl.providers.packages import RpmPackageManager
from tomcatctl.state import StateRegistry

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _demo_entry(uid: int, gid: int, **changes: object) -> dict[str, object]:
    entry: dict[str, object] = {
        "name": "demo1",
        "uid": uid,
        "gid": gid,
        "version": "9.0",
        "shutdown_port": 8005,
        "shutdown_key": "s3cret",
        "ajp_workers": [{"port": 8009}],
        "sites": [
            {"name": "siteA", "primary_hostname": "siteA.example.com"},
            {"name": "siteB", "disabled": True},
        ],
    }
    entry.update(changes)
    return entry


def _prepare_environment(
    tmp_path: Path,
    opt_tree: Callable[..., Path],
    *,
    config_overrides: dict[str, object] | None = None,
    instances: list[object] | None = None,
) -> tuple[dict[str, str], Path]:
    state_dir = tmp_path / "state"
    config = {
        "state_dir": str(state_dir),
        "registry_dir": str(state_dir / "registry"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "instances_root": str(tmp_path / "instances"),
        "opt_root": str(opt_tree()),
        "www_root": str(tmp_path / "www"),
        "user_daemons_pid": str(tmp_path / "user-daemons.pid"),
    }
    if config_overrides:
        config.update(config_overrides)

    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")

    registry = StateRegistry(state_dir / "registry")
    registry.ensure_root()
    if instances is not None:
        registry.write_instances(instances)

    (tmp_path / "instances").mkdir(parents=True, exist_ok=True)
    env = {"TOMCATCTL_CONFIG_FILE": str(config_file)}
    return env, state_dir


@pytest.fixture
def installed_tomcat(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pretend ``apache-tomcat_9_0`` 9.0.30-1 is installed."""
    monkeypatch.setattr(RpmPackageManager, "installed_version", lambda self, package: "9.0.30-1")


def test_version_option_outputs_package_version(tmp_path: Path, opt_tree: Callable[..., Path]) -> None:
    """CLI ``--version`` flag emits the package version."""
    env, _ = _prepare_environment(tmp_path, opt_tree)

    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout
    log_lines = (tmp_path / "logs" / "operations.jsonl").read_text().splitlines()
    assert json.loads(log_lines[-1])["operation"] == "root --version"


def test_invocation_without_subcommand_shows_help(tmp_path: Path, opt_tree: Callable[..., Path]) -> None:
    """Calling the CLI without a subcommand shows help output."""
    env, _ = _prepare_environment(tmp_path, opt_tree)

    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "Tomcat instance reconciliation CLI" in result.stdout


def test_invalid_config_is_a_validation_error(tmp_path: Path, opt_tree: Callable[..., Path]) -> None:
    """Unknown configuration keys abort with exit code 2."""
    env, _ = _prepare_environment(tmp_path, opt_tree, config_overrides={"colour": "blue"})

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 2
    assert "Unknown configuration keys" in result.stdout


def test_config_show_json(tmp_path: Path, opt_tree: Callable[..., Path]) -> None:
    """`config show --json` emits the resolved configuration."""
    env, state_dir = _prepare_environment(
        tmp_path, opt_tree, config_overrides={"restart": {"timeout": 90}}
    )

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["state_dir"] == str(state_dir)
    assert payload["registry_dir"] == str(state_dir / "registry")
    assert payload["restart"] == {"timeout": 90.0, "grace_delay": 5.0, "max_workers": 4}


def test_instance_list_json(
    tmp_path: Path,
    opt_tree: Callable[..., Path],
    owner: tuple[int, int],
) -> None:
    """`instance list --json` reports registered instances and their state."""
    env, _ = _prepare_environment(tmp_path, opt_tree, instances=[_demo_entry(*owner)])

    result = runner.invoke(app, ["instance", "list", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["instances"] == [
        {
            "name": "demo1",
            "version": "9.0",
            "topology": "shared",
            "sites": ["siteA"],
            "manual": False,
            "disabled": False,
            "status": "not-installed",
        }
    ]


def test_instance_list_reports_registry_errors(tmp_path: Path, opt_tree: Callable[..., Path]) -> None:
    """Malformed registry entries exit with a validation error."""
    env, _ = _prepare_environment(tmp_path, opt_tree, instances=[{"name": "demo1"}])

    result = runner.invoke(app, ["instance", "list"], env=env)

    assert result.exit_code == 2
    assert "Registry error" in result.stdout


def test_unknown_instance_is_rejected(
    tmp_path: Path,
    opt_tree: Callable[..., Path],
    owner: tuple[int, int],
) -> None:
    """Commands naming an unregistered instance exit with code 2."""
    env, _ = _prepare_environment(tmp_path, opt_tree, instances=[_demo_entry(*owner)])

    status = runner.invoke(app, ["instance", "status", "ghost"], env=env)
    restart = runner.invoke(app, ["restart", "ghost"], env=env)

    assert status.exit_code == 2
    assert "not found" in status.stdout
    assert restart.exit_code == 2
    assert "Unknown instance(s): ghost" in restart.stdout


def test_rebuild_without_restart(
    tmp_path: Path,
    opt_tree: Callable[..., Path],
    owner: tuple[int, int],
    installed_tomcat: None,
) -> None:
    """`rebuild --no-restart` converges the instance and records its status."""
    env, state_dir = _prepare_environment(tmp_path, opt_tree, instances=[_demo_entry(*owner)])

    result = runner.invoke(app, ["rebuild", "--no-restart", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["reconciled"] == ["demo1"]
    assert payload["restart_set"] == ["demo1"]
    assert payload["restarts"] == {}
    root = tmp_path / "instances" / "demo1"
    assert (root / "README.txt").is_file()
    assert 'name="sitea.example.com"' in (root / "conf" / "server.xml").read_text()

    status = StateRegistry(state_dir / "registry").read_status()
    assert status["demo1"]["dirty"] is True

    again = runner.invoke(app, ["rebuild", "--no-restart", "--json"], env=env)
    assert again.exit_code == 0
    assert _extract_json(again.stdout)["restart_set"] == []


def test_rebuild_reports_partial_failure(
    tmp_path: Path,
    opt_tree: Callable[..., Path],
    owner: tuple[int, int],
    installed_tomcat: None,
) -> None:
    """One broken instance yields exit code 1 while the others still converge."""
    broken = _demo_entry(*owner, name="legacy", version="8.5")
    env, _ = _prepare_environment(tmp_path, opt_tree, instances=[_demo_entry(*owner), broken])

    result = runner.invoke(app, ["rebuild", "--no-restart"], env=env)

    assert result.exit_code == 1
    assert "legacy: Unsupported Tomcat version '8.5'" in result.stdout
    assert (tmp_path / "instances" / "demo1" / "README.txt").is_file()
    records = [
        json.loads(line)
        for line in (tmp_path / "logs" / "operations.jsonl").read_text().splitlines()
    ]
    rebuild = [record for record in records if record["operation"] == "rebuild"][-1]
    assert rebuild["result"]["rc"] == 1
    assert rebuild["result"]["status"] == "warning"


def test_instance_status_and_stop(
    tmp_path: Path,
    opt_tree: Callable[..., Path],
    owner: tuple[int, int],
    installed_tomcat: None,
) -> None:
    """Status reports the package release; stopping a stopped instance is a no-op."""
    env, _ = _prepare_environment(tmp_path, opt_tree, instances=[_demo_entry(*owner)])
    assert runner.invoke(app, ["rebuild", "--no-restart"], env=env).exit_code == 0

    status = runner.invoke(app, ["instance", "status", "demo1", "--json"], env=env)
    stop = runner.invoke(app, ["instance", "stop", "demo1"], env=env)

    assert status.exit_code == 0
    payload = _extract_json(status.stdout)
    assert payload["status"] == "stopped"
    assert payload["package"] == "apache-tomcat_9_0"
    assert payload["package_version"] == "9.0.30-1"
    assert payload["pid"] is None
    assert stop.exit_code == 0
    assert "is not running" in stop.stdout
