"""Idempotent install primitives applied to a Tomcat instance directory.

An install plan is an ordered tuple of immutable actions. Each action is
evaluated against an :class:`InstallContext` and reports whether it altered
the filesystem. Actions never destroy data: anything they replace or retire
is renamed to a dated backup next to it.
"""
from __future__ import annotations

import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from .filesystem import Filesystem, FilesystemError
from .templates import TemplateEngine

PROFILE_SCRIPT_MODE = 0o700
PROFILE_SCRIPT_TEMPLATE = "tomcat/profile-script.sh.j2"


def relative_opt_slash(install_dir: Path, opt_root: Path) -> str:
    """Return the relative hop from *install_dir* to *opt_root*, with a trailing slash."""
    return os.path.relpath(opt_root, install_dir).rstrip("/") + "/"


@dataclass(frozen=True)
class InstallContext:
    """Everything an action needs to evaluate against one instance."""

    opt_root: Path
    template_dir: str
    install_dir: Path
    uid: int
    gid: int
    backup_suffix: str
    filesystem: Filesystem
    templates: TemplateEngine

    @property
    def opt_slash(self) -> str:
        """Return the relative path from the instance root to the template root parent."""
        return relative_opt_slash(self.install_dir, self.opt_root)

    @property
    def template_root(self) -> Path:
        """Return the shared template installation, e.g. ``/opt/apache-tomcat-9.0``."""
        return self.opt_root / self.template_dir

    def target(self, relative: str) -> Path:
        """Return the instance path for *relative*."""
        return self.install_dir / relative

    def template_link(self, relative: str) -> str:
        """Return the relative symlink target pointing *relative* at the template root."""
        hops = "../" * relative.count("/")
        return f"{hops}{self.opt_slash}{self.template_dir}/{relative}"

    def render(self, template_name: str, **extra: object) -> str:
        """Render a template with the standard instance variables."""
        context: dict[str, object] = {
            "install_dir": str(self.install_dir),
            "template_dir": self.template_dir,
            "opt_root": str(self.opt_root),
            "opt_slash": self.opt_slash,
        }
        context.update(extra)
        return self.templates.render_to_string(template_name, context)


@dataclass(frozen=True)
class InstallAction:
    """Base class for plan entries."""

    kind: ClassVar[str] = "action"

    path: str

    def apply(self, ctx: InstallContext) -> bool:  # pragma: no cover - abstract
        """Apply the action; return whether the filesystem changed."""
        raise NotImplementedError


@dataclass(frozen=True)
class Mkdir(InstallAction):
    """Ensure a directory with the given mode."""

    kind: ClassVar[str] = "mkdir"

    mode: int = 0o770

    def apply(self, ctx: InstallContext) -> bool:
        """Create or repair the directory."""
        return ctx.filesystem.ensure_directory(
            ctx.target(self.path), self.mode, ctx.uid, ctx.gid, ctx.backup_suffix
        )


@dataclass(frozen=True)
class Symlink(InstallAction):
    """Ensure a symlink, by default into the shared template installation."""

    kind: ClassVar[str] = "symlink"

    link_target: str | None = None

    def resolve_target(self, ctx: InstallContext) -> str:
        """Return the explicit target or the template-derived default."""
        return self.link_target if self.link_target is not None else ctx.template_link(self.path)

    def apply(self, ctx: InstallContext) -> bool:
        """Create or repoint the link."""
        return ctx.filesystem.ensure_symlink(
            ctx.target(self.path), self.resolve_target(ctx), ctx.uid, ctx.gid, ctx.backup_suffix
        )


@dataclass(frozen=True)
class SymlinkAll(InstallAction):
    """Link every entry of a template directory; extra entries are left alone."""

    kind: ClassVar[str] = "symlink-all"

    def apply(self, ctx: InstallContext) -> bool:
        """Add any missing links."""
        source = ctx.template_root / self.path
        if not source.is_dir():
            raise FilesystemError(f"Template directory {source} is missing")
        changed = False
        for name in ctx.filesystem.listdir(source):
            if Symlink(f"{self.path}/{name}").apply(ctx):
                changed = True
        return changed


@dataclass(frozen=True)
class Copy(InstallAction):
    """Seed a mutable file from the template once; never overwrite it."""

    kind: ClassVar[str] = "copy"

    mode: int = 0o660

    def apply(self, ctx: InstallContext) -> bool:
        """Copy the template file when the destination is absent."""
        destination = ctx.target(self.path)
        if ctx.filesystem.lstat(destination) is not None:
            return False
        content = ctx.filesystem.read_bytes(ctx.template_root / self.path)
        if content is None:
            raise FilesystemError(f"Template file {ctx.template_root / self.path} is missing")
        return ctx.filesystem.atomic_write(destination, content, self.mode, ctx.uid, ctx.gid, None)


@dataclass(frozen=True)
class Delete(InstallAction):
    """Retire a path left behind by older layouts by moving it to a backup."""

    kind: ClassVar[str] = "delete"

    def apply(self, ctx: InstallContext) -> bool:
        """Move the path aside when present."""
        target = ctx.target(self.path)
        if ctx.filesystem.lstat(target) is None:
            return False
        ctx.filesystem.rename_to_backup(target, ctx.backup_suffix)
        return True


@dataclass(frozen=True)
class Generated(InstallAction):
    """Write content computed from the instance parameters."""

    kind: ClassVar[str] = "generated"

    mode: int = 0o640
    generator: Callable[[InstallContext], str] | None = None

    def content(self, ctx: InstallContext) -> bytes:
        """Return the generated bytes."""
        if self.generator is None:
            raise ValueError(f"Generated action for {self.path} has no generator")
        return self.generator(ctx).encode("utf-8")

    def apply(self, ctx: InstallContext) -> bool:
        """Atomically write the content when it differs."""
        return ctx.filesystem.atomic_write(
            ctx.target(self.path),
            self.content(ctx),
            self.mode,
            ctx.uid,
            ctx.gid,
            ctx.backup_suffix,
        )


@dataclass(frozen=True)
class ProfileScript(Generated):
    """A wrapper that loads the instance profile then execs the template script."""

    kind: ClassVar[str] = "profile-script"

    mode: int = PROFILE_SCRIPT_MODE

    def content(self, ctx: InstallContext) -> bytes:
        """Render the wrapper for this script."""
        rendered = ctx.render(
            PROFILE_SCRIPT_TEMPLATE,
            script=str(ctx.template_root / self.path),
        )
        return rendered.encode("utf-8")


def apply_plan(plan: Iterable[InstallAction], ctx: InstallContext) -> bool:
    """Apply every action in order; return whether any of them changed the filesystem."""
    changed = False
    for action in plan:
        if action.apply(ctx):
            changed = True
    return changed


__all__ = [
    "Copy",
    "Delete",
    "Generated",
    "InstallAction",
    "InstallContext",
    "Mkdir",
    "ProfileScript",
    "Symlink",
    "SymlinkAll",
    "apply_plan",
    "relative_opt_slash",
]
