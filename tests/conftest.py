"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from tomcatctl.filesystem import Filesystem
from tomcatctl.ladder import PackageVersion
from tomcatctl.manager import InstanceManager
from tomcatctl.models import AjpWorker, Instance, Site, Topology
from tomcatctl.templates import TemplateEngine
from tomcatctl.versions import TOMCAT_9_0, VersionDescriptor

BASE_JARS = ("catalina.jar", "servlet-api.jar", "tomcat-coyote.jar")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class RecordingFilesystem(Filesystem):
    """Filesystem that records every mutating primitive it performs."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def mkdir(self, path: Path, mode: int) -> None:
        self.calls.append(("mkdir", str(path)))
        super().mkdir(path, mode)

    def chmod(self, path: Path, mode: int) -> None:
        self.calls.append(("chmod", str(path)))
        super().chmod(path, mode)

    def chown(self, path: Path, uid: int, gid: int) -> None:
        self.calls.append(("chown", str(path)))
        super().chown(path, uid, gid)

    def symlink(self, target: str, path: Path) -> None:
        self.calls.append(("symlink", str(path)))
        super().symlink(target, path)

    def rename(self, source: Path, destination: Path) -> None:
        self.calls.append(("rename", str(destination)))
        super().rename(source, destination)

    def unlink(self, path: Path) -> None:
        self.calls.append(("unlink", str(path)))
        super().unlink(path)

    def write_temp(
        self,
        directory: Path,
        name: str,
        content: bytes,
        *,
        mode: int,
        uid: int,
        gid: int,
    ) -> Path:
        self.calls.append(("write_temp", str(directory / name)))
        return super().write_temp(directory, name, content, mode=mode, uid=uid, gid=gid)


class FakePackageManager:
    """Package manager returning canned ``version-release`` strings."""

    def __init__(self, versions: dict[str, str] | None = None) -> None:
        self.versions = dict(versions or {})
        self.queries: list[str] = []

    def installed_version(self, package: str) -> str:
        self.queries.append(package)
        return self.versions[package]


def library_jars(descriptor: VersionDescriptor, installed: str) -> set[str]:
    """Return the jar names a template ``lib/`` holds at release *installed*."""
    target = PackageVersion.parse(installed)
    renamed_to = {new for entry in descriptor.releases for _, new in entry.renames}
    jars = set(BASE_JARS)
    jars.update(
        old for entry in descriptor.releases for old, _ in entry.renames if old not in renamed_to
    )
    for entry in descriptor.releases:
        if PackageVersion.parse(entry.release) > target:
            break
        for old, new in entry.renames:
            jars.discard(old)
            jars.add(new)
        jars.update(entry.added)
        jars.difference_update(entry.removed)
    return jars


@pytest.fixture
def owner() -> tuple[int, int]:
    """Return a uid/gid pair the test process may assign to files it creates."""
    if os.geteuid() == 0:
        return 4242, 4242
    return os.geteuid(), os.getegid()


@pytest.fixture
def opt_tree(tmp_path: Path) -> Callable[..., Path]:
    """Return a builder for a fake ``/opt`` holding one Tomcat template installation."""

    def build(descriptor: VersionDescriptor = TOMCAT_9_0, installed: str = "9.0.30-1") -> Path:
        opt_root = tmp_path / "opt"
        template = opt_root / descriptor.template_dir
        lib = template / "lib"
        lib.mkdir(parents=True, exist_ok=True)
        for existing in lib.iterdir():
            existing.unlink()
        for jar in sorted(library_jars(descriptor, installed)):
            (lib / jar).write_bytes(b"PK")
        (template / "conf").mkdir(exist_ok=True)
        (template / "conf" / "tomcat-users.xml").write_text("<tomcat-users/>\n", encoding="utf-8")
        web_inf = template / "webapps" / "ROOT" / "WEB-INF"
        web_inf.mkdir(parents=True, exist_ok=True)
        (web_inf / "web.xml").write_text("<web-app/>\n", encoding="utf-8")
        (template / "RELEASE-NOTES").write_text(f"Apache Tomcat {installed}\n", encoding="utf-8")
        return opt_root

    return build


@pytest.fixture
def demo1(tmp_path: Path, owner: tuple[int, int]) -> Instance:
    """Shared 9.0 instance with siteA enabled and siteB disabled."""
    uid, gid = owner
    instances_root = tmp_path / "instances"
    instances_root.mkdir(exist_ok=True)
    return Instance(
        name="demo1",
        root=instances_root / "demo1",
        uid=uid,
        gid=gid,
        version="9.0",
        topology=Topology.SHARED,
        sites=(
            Site(
                name="siteA",
                gid=gid,
                primary_hostname="siteA.example.com",
                aliases=("www.siteA.example.com", "SITEA.example.com"),
            ),
            Site(name="siteB", gid=gid, disabled=True),
        ),
        shutdown_port=8005,
        shutdown_key="s3cret",
        ajp_workers=(AjpWorker(port=8009),),
    )


@pytest.fixture
def make_manager(tmp_path: Path, opt_tree: Callable[..., Path]) -> Callable[..., InstanceManager]:
    """Return a factory for managers wired to the fake ``/opt`` tree."""

    def build(
        filesystem: Filesystem | None = None,
        packages: FakePackageManager | None = None,
        installed: str = "9.0.30-1",
    ) -> InstanceManager:
        opt_root = opt_tree(installed=installed)
        return InstanceManager(
            templates=TemplateEngine.with_overrides(None),
            packages=packages or FakePackageManager({"apache-tomcat_9_0": installed}),
            filesystem=filesystem or Filesystem(),
            opt_root=opt_root,
            www_root=tmp_path / "www",
        )

    return build


@pytest.fixture
def recording_fs() -> RecordingFilesystem:
    """Return a filesystem that records its mutations."""
    return RecordingFilesystem()


@pytest.fixture
def jar_set() -> Callable[[VersionDescriptor, str], set[str]]:
    """Expose :func:`library_jars` to tests."""
    return library_jars


@pytest.fixture
def fake_packages() -> type[FakePackageManager]:
    """Expose the fake package manager class to tests."""
    return FakePackageManager
