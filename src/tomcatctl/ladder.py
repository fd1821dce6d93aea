"""Version ladder: symlink retargets replayed across minor package releases.

A Tomcat template package (``apache-tomcat-10.1`` for example) is upgraded in
place by the package manager. Instance directories symlink into it, so every
release that renames a bundled jar needs the matching links in each instance
moved as well. A :class:`VersionLadder` records those renames per release
(:class:`VersionMilestone`) and replays them relative to whatever release is
currently installed:

* milestones newer than the installed release are undone (newest first), so
  an instance built against a newer template rolls back cleanly;
* milestones at or below the installed release are applied (oldest first).

Both passes are idempotent, so running the ladder on every reconciliation is
safe and a no-op once the links match the installed release.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from functools import total_ordering
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .filesystem import Filesystem

DISABLED_TARGET = "/dev/null"
_RELEASE_PATTERN = re.compile(r"^\d+(?:\.\d+)*")


class UnsupportedVersionError(RuntimeError):
    """Raised when a version falls outside the known descriptor or ladder range."""


@total_ordering
@dataclass(frozen=True)
class PackageVersion:
    """A comparable ``version-release`` pair such as ``10.1.5-1.el7``."""

    version: Version
    release: Version
    text: str

    @classmethod
    def parse(cls, value: str) -> PackageVersion:
        """Parse ``<version>-<release>``; distribution suffixes on the release are ignored."""
        text = value.strip()
        version_text, _, release_text = text.rpartition("-")
        if not version_text:
            version_text, release_text = text, "0"
        match = _RELEASE_PATTERN.match(release_text)
        try:
            return cls(
                version=Version(version_text),
                release=Version(match.group(0) if match else "0"),
                text=text,
            )
        except InvalidVersion as exc:
            raise UnsupportedVersionError(f"Cannot parse package version {value!r}") from exc

    def _key(self) -> tuple[Version, Version]:
        return (self.version, self.release)

    def __eq__(self, other: object) -> bool:
        """Compare by version then release."""
        if not isinstance(other, PackageVersion):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other: PackageVersion) -> bool:
        """Order by version then release."""
        return self._key() < other._key()

    def __hash__(self) -> int:
        """Hash consistently with equality."""
        return hash(self._key())

    def __str__(self) -> str:
        """Return the original text."""
        return self.text


@dataclass(frozen=True)
class SymlinkTransition:
    """Move one link from an old path/target to a new path/target.

    ``old_target=None`` means "no link existed before" (the transition creates
    the new link); ``new_path=None`` with ``new_target=None`` means "no link
    afterwards" (the transition removes the old one).
    """

    old_path: str
    old_target: str | None
    new_path: str | None
    new_target: str | None

    def __post_init__(self) -> None:
        """Reject transitions that cannot be applied or reversed meaningfully."""
        if not self.old_path:
            raise ValueError("old_path is required")
        if self.old_path == self.new_path and self.old_target == self.new_target:
            raise ValueError(
                f"Transition for {self.old_path} does not change anything ({self.old_target})"
            )
        if (self.new_path is None) != (self.new_target is None):
            raise ValueError(
                f"new_path and new_target must both be set or both be None for {self.old_path}"
            )
        if self.old_target is None and self.new_target is None:
            raise ValueError(f"old_target and new_target cannot both be None for {self.old_path}")

    @classmethod
    def retarget(cls, path: str, old_target: str | None, new_target: str | None) -> SymlinkTransition:
        """Build a transition that keeps the same link path."""
        return cls(path, old_target, path if new_target is not None else None, new_target)

    def reversed(self) -> SymlinkTransition:
        """Return the transition that undoes this one."""
        if self.old_target is None:
            # Undo a creation: remove the link created at new_path.
            assert self.new_path is not None
            return SymlinkTransition(self.new_path, self.new_target, None, None)
        if self.new_path is None:
            # Undo a removal: recreate the old link where it was.
            return SymlinkTransition(self.old_path, None, self.old_path, self.old_target)
        return SymlinkTransition(self.new_path, self.new_target, self.old_path, self.old_target)

    def apply(self, base: Path, uid: int, gid: int, filesystem: Filesystem) -> bool:
        """Apply against the instance rooted at *base*; return whether a link changed."""
        old_link = base / self.old_path
        new_link = base / self.new_path if self.new_path is not None else None
        changed = False

        if self.old_target is None:
            assert new_link is not None and self.new_target is not None
            if filesystem.lstat(old_link) is None and filesystem.lstat(new_link) is None:
                filesystem.symlink(self.new_target, new_link)
                changed = True
        elif filesystem.readlink(old_link) == self.old_target:
            filesystem.unlink(old_link)
            # A rebuild may already have linked the new name from the template.
            if new_link is not None and filesystem.lstat(new_link) is None:
                assert self.new_target is not None
                filesystem.symlink(self.new_target, new_link)
            changed = True

        # Ownership repair alone does not warrant a restart.
        if new_link is not None and filesystem.lstat(new_link) is not None:
            filesystem.ensure_owner_mode(new_link, uid, gid)
        return changed


@dataclass(frozen=True)
class VersionMilestone:
    """The transitions introduced by one package release."""

    version: PackageVersion
    transitions: tuple[SymlinkTransition, ...] = ()


@dataclass(frozen=True)
class VersionLadder:
    """An ordered chain of milestones for one template package."""

    package: str
    milestones: tuple[VersionMilestone, ...]

    def __post_init__(self) -> None:
        """Require a non-empty, strictly increasing chain."""
        if not self.milestones:
            raise ValueError(f"Ladder for {self.package} has no milestones")
        versions = [milestone.version for milestone in self.milestones]
        if any(later <= earlier for earlier, later in zip(versions, versions[1:])):
            raise ValueError(f"Ladder milestones for {self.package} must be strictly increasing")

    @property
    def oldest(self) -> PackageVersion:
        """Return the oldest supported release."""
        return self.milestones[0].version

    @property
    def newest(self) -> PackageVersion:
        """Return the newest known release."""
        return self.milestones[-1].version

    def upgrade(
        self,
        install_dir: Path,
        uid: int,
        gid: int,
        installed: PackageVersion | str,
        filesystem: Filesystem,
    ) -> bool:
        """Converge the links under *install_dir* to the *installed* release.

        An out-of-range release raises before any link is touched.
        """
        current = self.supported(installed)
        changed = False

        for milestone in reversed(self.milestones):
            if current < milestone.version:
                if _apply_all((t.reversed() for t in milestone.transitions), install_dir, uid, gid, filesystem):
                    changed = True

        for milestone in self.milestones:
            if current >= milestone.version:
                if _apply_all(milestone.transitions, install_dir, uid, gid, filesystem):
                    changed = True
        return changed

    def supported(self, installed: PackageVersion | str) -> PackageVersion:
        """Parse *installed* and raise unless it lies within the ladder."""
        current = installed if isinstance(installed, PackageVersion) else PackageVersion.parse(installed)
        if current < self.oldest:
            raise UnsupportedVersionError(
                f"Version of {self.package} older than expected: {current}"
            )
        if current > self.newest:
            raise UnsupportedVersionError(
                f"Version of {self.package} newer than expected: {current}"
            )
        return current


def _apply_all(
    transitions: Iterable[SymlinkTransition],
    base: Path,
    uid: int,
    gid: int,
    filesystem: Filesystem,
) -> bool:
    changed = False
    for transition in transitions:
        if transition.apply(base, uid, gid, filesystem):
            changed = True
    return changed


def library_changes(
    lib_prefix: str,
    renames: Sequence[tuple[str, str]] = (),
    added: Sequence[str] = (),
    removed: Sequence[str] = (),
) -> tuple[SymlinkTransition, ...]:
    """Expand compact jar rename/add/remove data into transitions under ``lib/``.

    *lib_prefix* is the link target prefix for the template ``lib`` directory,
    e.g. ``../../../opt/apache-tomcat-10.1/lib/``. Renames also carry a
    ``/dev/null`` twin so a jar the operator disabled stays disabled.
    """
    transitions: list[SymlinkTransition] = []
    for old_jar, new_jar in renames:
        transitions.append(
            SymlinkTransition(f"lib/{old_jar}", DISABLED_TARGET, f"lib/{new_jar}", DISABLED_TARGET)
        )
        transitions.append(
            SymlinkTransition(
                f"lib/{old_jar}",
                f"{lib_prefix}{old_jar}",
                f"lib/{new_jar}",
                f"{lib_prefix}{new_jar}",
            )
        )
    for jar in added:
        transitions.append(SymlinkTransition(f"lib/{jar}", None, f"lib/{jar}", f"{lib_prefix}{jar}"))
    for jar in removed:
        transitions.append(SymlinkTransition(f"lib/{jar}", f"{lib_prefix}{jar}", None, None))
    return tuple(transitions)


__all__ = [
    "DISABLED_TARGET",
    "PackageVersion",
    "SymlinkTransition",
    "UnsupportedVersionError",
    "VersionLadder",
    "VersionMilestone",
    "library_changes",
]
