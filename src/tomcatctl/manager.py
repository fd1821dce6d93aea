"""Reconciliation of one Tomcat instance directory.

:class:`InstanceManager` converges an instance directory to its desired state.
The version-specific parts (install plan, version ladder, template package)
come from the :mod:`tomcatctl.versions` descriptor table; everything else is
shared between Tomcat lines and topologies.

State machine, decided at the start of every pass:

``Fresh``
    The directory is absent or still owned by root. The full plan is applied,
    the change marker written and the directory handed to the instance owner.
``Rebuild``
    Auto-managed and the change marker is missing or stale (another Tomcat
    line was selected). The full plan is re-applied over the existing tree.
``Current``
    The marker matches; only the targeted steps below run.
``Manual``
    The operator owns the tree. The plan and marker are skipped and existing
    configuration is never overwritten.

Targeted steps run in every state: the members file, per-host work
directories, ``conf/server.xml``, the daemon enable link and, unless manual,
the version ladder.
"""
from __future__ import annotations

import logging
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .artifacts import (
    AUTO_WARNING_XML,
    XML_DECLARATION,
    render_members,
    render_readme,
    render_server_xml,
    work_directories,
)
from .filesystem import BACKUP_EXTENSION, Filesystem, FilesystemError
from .install import InstallContext, apply_plan
from .ladder import PackageVersion, VersionLadder
from .lifecycle import is_startable
from .models import Instance, ReconcileResult
from .plans import build_plan, jdk_link_target
from .providers.packages import PackageManager
from .templates import TemplateEngine
from .versions import VersionDescriptor, get_descriptor

LOGGER = logging.getLogger(__name__)

ROOT_UID = 0
README_TXT = "README.txt"
RELEASE_NOTES = "RELEASE-NOTES"
DAEMON_LINK_TARGET = "../bin/tomcat"


class InstanceState(str, Enum):
    """How an instance directory is treated on this pass."""

    FRESH = "fresh"
    REBUILD = "rebuild"
    CURRENT = "current"
    MANUAL = "manual"


@dataclass(slots=True)
class InstanceManager:
    """Converge instance directories through an injected filesystem and package manager."""

    templates: TemplateEngine
    packages: PackageManager
    filesystem: Filesystem = field(default_factory=Filesystem)
    opt_root: Path = Path("/opt")
    www_root: Path = Path("/var/www")
    jdk_profile: str = "jdk-lts/profile.sh"

    # ------------------------------------------------------------------
    def context(self, instance: Instance, descriptor: VersionDescriptor, backup_suffix: str) -> InstallContext:
        """Return the install context for *instance*."""
        return InstallContext(
            opt_root=self.opt_root,
            template_dir=descriptor.template_dir,
            install_dir=instance.root,
            uid=instance.uid,
            gid=instance.gid,
            backup_suffix=backup_suffix,
            filesystem=self.filesystem,
            templates=self.templates,
        )

    def classify(self, instance: Instance, readme_content: bytes) -> InstanceState:
        """Decide which state *instance* is in, without touching the disk."""
        current = self.filesystem.lstat(instance.root)
        if current is None or current.st_uid == ROOT_UID:
            return InstanceState.FRESH
        if instance.manual:
            return InstanceState.MANUAL
        readme = instance.root / README_TXT
        readme_stat = self.filesystem.lstat(readme)
        if (
            readme_stat is not None
            and stat.S_ISREG(readme_stat.st_mode)
            and self.filesystem.read_bytes(readme) == readme_content
        ):
            return InstanceState.CURRENT
        return InstanceState.REBUILD

    def reconcile(self, instance: Instance, backup_suffix: str) -> ReconcileResult:
        """Converge *instance*; the result says whether a restart is needed."""
        descriptor = get_descriptor(instance.version)
        ctx = self.context(instance, descriptor, backup_suffix)
        fs = self.filesystem
        root = instance.root

        ladder = descriptor.ladder(ctx.opt_slash)
        installed: PackageVersion | None = None
        if not instance.manual:
            installed = ladder.supported(self.packages.installed_version(descriptor.package_name))

        readme_content = render_readme(self.templates, instance, self.opt_root, descriptor.template_dir)
        state = self.classify(instance, readme_content)
        LOGGER.debug("Instance %s is %s", instance.name, state.value)
        dirty = False

        if state in (InstanceState.FRESH, InstanceState.REBUILD):
            fresh = state is InstanceState.FRESH
            if fresh:
                if fs.lstat(root) is None:
                    fs.mkdir(root, 0o770)
                fs.chmod(root, 0o770)
            plan = build_plan(
                descriptor,
                instance.topology,
                is_upgrade=not fresh,
                jdk_target=jdk_link_target(ctx.opt_slash, self.jdk_profile),
            )
            apply_plan(plan, ctx)
            fs.atomic_write(root / README_TXT, readme_content, 0o440, instance.uid, instance.gid, None)
            # Ownership marks the directory as installed for future passes.
            if fresh:
                fs.chown(root, instance.uid, instance.gid)
            dirty = True

        if self._write_members(instance, backup_suffix):
            dirty = True

        work_changed, orphans = self._reconcile_work(instance, backup_suffix)
        if work_changed:
            dirty = True

        if self._write_server_xml(instance, backup_suffix):
            dirty = True

        if self._reconcile_daemon_link(instance):
            dirty = True

        if installed is not None:
            if self.upgrade(instance, ladder, installed, ctx):
                dirty = True

        return ReconcileResult(instance=instance.name, dirty=dirty, orphans=tuple(orphans))

    # ------------------------------------------------------------------
    def upgrade(
        self,
        instance: Instance,
        ladder: VersionLadder,
        installed: PackageVersion,
        ctx: InstallContext,
    ) -> bool:
        """Apply the version ladder and refresh ``RELEASE-NOTES``."""
        changed = ladder.upgrade(
            instance.root, instance.uid, instance.gid, installed, self.filesystem
        )
        source = ctx.template_root / RELEASE_NOTES
        notes = self.filesystem.read_bytes(source)
        if notes is None:
            raise FilesystemError(f"{source} is missing")
        # Catches minor updates that do not rename any jar.
        if self.filesystem.atomic_write(
            instance.root / RELEASE_NOTES, notes, 0o440, instance.uid, instance.gid, None
        ):
            changed = True
        return changed

    def _write_members(self, instance: Instance, backup_suffix: str) -> bool:
        profile_d = instance.root / "bin" / "profile.d"
        if instance.manual and self.filesystem.lstat(profile_d) is None:
            return False
        content = render_members(self.templates, instance, self.www_root)
        return self.filesystem.atomic_write(
            profile_d / "httpd-sites.sh", content, 0o640, instance.uid, instance.gid, backup_suffix
        )

    def _reconcile_work(self, instance: Instance, backup_suffix: str) -> tuple[bool, list[Path]]:
        work_catalina = instance.root / "work" / "Catalina"
        if instance.manual and self.filesystem.lstat(work_catalina) is None:
            return False, []
        wanted = work_directories(instance)
        changed = False
        for name, gid in wanted.items():
            if self.filesystem.ensure_directory(work_catalina / name, 0o750, instance.uid, gid, backup_suffix):
                changed = True
        orphans: list[Path] = []
        for name in self.filesystem.listdir(work_catalina):
            if name in wanted or name.endswith(BACKUP_EXTENSION):
                continue
            path = work_catalina / name
            LOGGER.info("Scheduling for removal: %s", path)
            orphans.append(path)
        return changed, orphans

    def _write_server_xml(self, instance: Instance, backup_suffix: str) -> bool:
        conf = instance.root / "conf"
        server_xml = conf / "server.xml"
        if instance.manual:
            if self.filesystem.lstat(conf) is None:
                return False
            if self.filesystem.lstat(server_xml) is not None:
                self._strip_banner(server_xml)
                return False
        content = render_server_xml(self.templates, instance, self.www_root)
        return self.filesystem.atomic_write(
            server_xml, content, 0o640, instance.uid, instance.gid, backup_suffix
        )

    def _strip_banner(self, server_xml: Path) -> None:
        current = self.filesystem.lstat(server_xml)
        if current is None or not stat.S_ISREG(current.st_mode):
            return
        try:
            self.filesystem.strip_file_prefix(server_xml, (XML_DECLARATION + AUTO_WARNING_XML).encode("utf-8"))
            self.filesystem.strip_file_prefix(server_xml, AUTO_WARNING_XML.encode("utf-8"))
        except OSError as exc:
            # Operator-owned content; leave it as it is.
            LOGGER.debug("Unable to strip banner from %s: %s", server_xml, exc)

    def _reconcile_daemon_link(self, instance: Instance) -> bool:
        fs = self.filesystem
        link = instance.daemon_link
        enabled = is_startable(instance, fs)
        present = fs.lstat(link) is not None
        if enabled:
            if present:
                return False
            if fs.lstat(link.parent) is None:
                LOGGER.warning("Cannot enable %s: %s is missing", instance.name, link.parent)
                return False
            fs.symlink(DAEMON_LINK_TARGET, link)
            fs.chown(link, instance.uid, instance.gid)
            return True
        if present:
            fs.unlink(link)
        return False


__all__ = ["InstanceManager", "InstanceState", "README_TXT"]
