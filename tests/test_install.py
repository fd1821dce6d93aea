"""Tests for the idempotent install primitives."""
from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from tomcatctl.filesystem import Filesystem, FilesystemError
from tomcatctl.install import (
    Copy,
    Delete,
    Generated,
    InstallContext,
    Mkdir,
    ProfileScript,
    Symlink,
    SymlinkAll,
    apply_plan,
    relative_opt_slash,
)
from tomcatctl.templates import TemplateEngine

SUFFIX = "-2024-03-01"


@pytest.fixture
def ctx(tmp_path: Path) -> InstallContext:
    opt_root = tmp_path / "opt"
    template = opt_root / "apache-tomcat-9.0"
    (template / "lib").mkdir(parents=True)
    (template / "lib" / "catalina.jar").write_bytes(b"PK")
    (template / "lib" / "ecj-4.13.jar").write_bytes(b"PK")
    (template / "conf").mkdir()
    (template / "conf" / "tomcat-users.xml").write_text("<tomcat-users/>\n")
    install_dir = tmp_path / "var" / "opt" / "apache-tomcat" / "demo1"
    install_dir.mkdir(parents=True)
    return InstallContext(
        opt_root=opt_root,
        template_dir="apache-tomcat-9.0",
        install_dir=install_dir,
        uid=os.geteuid(),
        gid=os.getegid(),
        backup_suffix=SUFFIX,
        filesystem=Filesystem(),
        templates=TemplateEngine.with_overrides(None),
    )


def test_relative_opt_slash() -> None:
    """The hop back to ``/opt`` depends on the instance depth."""
    assert relative_opt_slash(Path("/var/opt/apache-tomcat/demo1"), Path("/opt")) == "../../../../opt/"
    assert relative_opt_slash(Path("/opt/tomcat/demo1"), Path("/opt")) == "../../"


def test_symlink_default_target_counts_depth(ctx: InstallContext) -> None:
    """Nested links climb one extra level per path segment."""
    assert Symlink("bin/bootstrap.jar").resolve_target(ctx) == (
        "../../../../../opt/apache-tomcat-9.0/bin/bootstrap.jar"
    )
    assert Symlink("logs", "var/log").resolve_target(ctx) == "var/log"


def test_mkdir_then_symlink_idempotent(ctx: InstallContext) -> None:
    """A second application of the same plan reports no change."""
    plan = (Mkdir("bin", 0o770), Symlink("bin/bootstrap.jar"), Symlink("logs", "var/log"))

    assert apply_plan(plan, ctx) is True
    assert stat.S_IMODE((ctx.install_dir / "bin").stat().st_mode) == 0o770
    assert os.readlink(ctx.install_dir / "logs") == "var/log"
    assert apply_plan(plan, ctx) is False


def test_symlink_all_is_additive(ctx: InstallContext) -> None:
    """Every template entry is linked; operator extras are left alone."""
    Mkdir("lib", 0o770).apply(ctx)
    extra = ctx.install_dir / "lib" / "site-driver.jar"
    extra.write_bytes(b"PK")

    assert SymlinkAll("lib").apply(ctx) is True

    lib = ctx.install_dir / "lib"
    assert sorted(path.name for path in lib.iterdir()) == [
        "catalina.jar",
        "ecj-4.13.jar",
        "site-driver.jar",
    ]
    assert os.readlink(lib / "ecj-4.13.jar").endswith("opt/apache-tomcat-9.0/lib/ecj-4.13.jar")
    assert extra.read_bytes() == b"PK"
    assert SymlinkAll("lib").apply(ctx) is False


def test_symlink_all_requires_template_directory(ctx: InstallContext) -> None:
    """A missing template directory is an error rather than a silent no-op."""
    with pytest.raises(FilesystemError, match="Template directory"):
        SymlinkAll("missing").apply(ctx)


def test_copy_seeds_once(ctx: InstallContext) -> None:
    """Copies never overwrite an existing destination."""
    Mkdir("conf", 0o770).apply(ctx)
    action = Copy("conf/tomcat-users.xml", 0o660)

    assert action.apply(ctx) is True
    destination = ctx.install_dir / "conf" / "tomcat-users.xml"
    assert stat.S_IMODE(destination.stat().st_mode) == 0o660

    destination.write_text("<tomcat-users><user/></tomcat-users>\n")
    assert action.apply(ctx) is False
    assert "<user/>" in destination.read_text()


def test_delete_moves_to_backup(ctx: InstallContext) -> None:
    """Deleted paths survive under a backup name."""
    retired = ctx.install_dir / "common"
    retired.mkdir()
    (retired / "keep.txt").write_text("data")

    assert Delete("common").apply(ctx) is True
    assert Delete("common").apply(ctx) is False
    assert (ctx.install_dir / f"common{SUFFIX}.bak" / "keep.txt").read_text() == "data"


def test_generated_backs_up_edits(ctx: InstallContext) -> None:
    """Generated files restore their content and keep the edit as a backup."""
    Mkdir("bin", 0o770).apply(ctx)
    action = Generated("bin/startup.sh", 0o700, lambda c: f"#!/bin/sh\n# {c.template_dir}\n")

    assert action.apply(ctx) is True
    target = ctx.install_dir / "bin" / "startup.sh"
    target.write_text("edited")

    assert action.apply(ctx) is True
    assert target.read_text() == "#!/bin/sh\n# apache-tomcat-9.0\n"
    assert (ctx.install_dir / "bin" / f"startup.sh{SUFFIX}.bak").read_text() == "edited"
    assert action.apply(ctx) is False


def test_profile_script_wraps_template_script(ctx: InstallContext) -> None:
    """Profile scripts reset the environment and exec the shared script."""
    Mkdir("bin", 0o770).apply(ctx)

    assert ProfileScript("bin/catalina.sh").apply(ctx) is True

    script = ctx.install_dir / "bin" / "catalina.sh"
    text = script.read_text()
    assert stat.S_IMODE(script.stat().st_mode) == 0o700
    assert text.startswith("#!/bin/sh\n")
    assert "exec env -i PROFILE_RESET='true'" in text
    assert f"export PROFILE_D='{ctx.install_dir}/bin/profile.d'" in text
    assert f"exec '{ctx.opt_root}/apache-tomcat-9.0/bin/catalina.sh' \"$@\"" in text
