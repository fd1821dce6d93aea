"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from tomcatctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.instances_root == Path("/var/opt/apache-tomcat")
    assert config.opt_root == Path("/opt")
    assert config.registry_dir == Path("/var/lib/tomcatctl/registry")
    assert config.templates_dir == Path("/etc/tomcatctl/templates")
    assert config.backup_suffix == "-%Y-%m-%d"
    assert config.keep_dirs == ("lost+found", "aquota.group", "aquota.user")
    assert config.user_daemons_pid == Path("/var/run/aoserv-user-daemons.pid")
    assert config.restart.timeout == 60.0
    assert config.restart.grace_delay == 5.0
    assert config.packages.rpm_bin == "rpm"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "tomcatctl.yml"
    cfg.write_text(
        "instances_root: {root}\n"
        "jdk_profile: /jdk17/profile.sh\n"
        "restart:\n"
        "  timeout: 90\n"
        "  max_workers: 2\n"
        "packages:\n"
        "  rpm_bin: /usr/bin/rpm\n".format(root=str(tmp_path / "tomcats"))
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.instances_root == tmp_path / "tomcats"
    assert config.jdk_profile == "jdk17/profile.sh"
    assert config.restart.timeout == 90.0
    assert config.restart.max_workers == 2
    assert config.restart.grace_delay == 5.0
    assert config.packages.rpm_bin == "/usr/bin/rpm"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "tomcatctl.yml"
    cfg.write_text("restart:\n  timeout: 30\n")
    state_dir = tmp_path / "state"
    env = {
        "TOMCATCTL_RESTART__TIMEOUT": "45",
        "TOMCATCTL_RESTART__GRACE_DELAY": "0",
        "TOMCATCTL_STATE_DIR": str(state_dir),
        "TOMCATCTL_LOCK_TIMEOUT": "12",
        "TOMCATCTL_KEEP_DIRS": "[lost+found]",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.restart.timeout == 45.0
    assert config.restart.grace_delay == 0.0
    assert config.state_dir == state_dir
    assert config.registry_dir == state_dir / "registry"
    assert config.lock_timeout == 12.0
    assert config.keep_dirs == ("lost+found",)


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("www_root: /srv/www\n")

    config = load_config(env={"TOMCATCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.www_root == Path("/srv/www")


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides sit at the top of the precedence chain."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"TOMCATCTL_LOCK_TIMEOUT": "12"},
        overrides={"lock_timeout": 3},
    )

    assert config.lock_timeout == 3.0


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """The dictionary form only holds plain values."""
    data = load_config(config_file=tmp_path / "missing.yml", env={}).to_dict()

    assert data["instances_root"] == "/var/opt/apache-tomcat"
    assert data["restart"] == {"timeout": 60.0, "grace_delay": 5.0, "max_workers": 4}
    assert data["keep_dirs"] == ["lost+found", "aquota.group", "aquota.user"]


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A top-level list raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_restart_keys_raise(tmp_path: Path) -> None:
    """Extra restart keys produce ConfigError for clarity."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("restart:\n  timeout: 10\n  retries: 3\n")

    with pytest.raises(ConfigError, match="Unknown restart configuration keys"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("restart:\n  timeout: 0\n", "restart.timeout must be greater than zero"),
        ("restart:\n  grace_delay: -1\n", "restart.grace_delay must not be negative"),
        ("restart:\n  max_workers: 0\n", "restart.max_workers must be at least 1"),
        ("lock_timeout: nope\n", "Invalid number for lock_timeout"),
        ("backup_suffix: a/b\n", "backup_suffix must be a string"),
        ("jdk_profile: ''\n", "jdk_profile must be a non-empty"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, content: str, message: str) -> None:
    """Out-of-range values are rejected with a helpful message."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(content)

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})
