"""Filesystem boundary used by every reconciliation step.

All mutations performed while reconciling an instance go through the small
set of primitive methods on :class:`Filesystem` (``mkdir``, ``chmod``,
``chown``, ``symlink``, ``rename``, ``unlink`` and ``write_temp``). The
composite helpers below them (atomic writes, backup naming, directory and
symlink assertion, banner stripping) are built only from those primitives, so
a subclass can observe or veto every write.

Nothing is ever destroyed outright: replaced or retired paths are renamed to
``<name><suffix>.bak`` (probing ``.2.bak``, ``.3.bak`` and so on when that
name is taken).
"""
from __future__ import annotations

import logging
import os
import stat
import tempfile
from pathlib import Path

LOGGER = logging.getLogger(__name__)

BACKUP_SEPARATOR = "."
BACKUP_EXTENSION = ".bak"


class FilesystemError(RuntimeError):
    """Raised when the on-disk state prevents a safe mutation."""


class Filesystem:
    """POSIX filesystem operations with explicit ownership and modes."""

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def lstat(self, path: Path) -> os.stat_result | None:
        """Return ``lstat`` for *path* or ``None`` when it does not exist."""
        try:
            return os.lstat(path)
        except FileNotFoundError:
            return None

    def readlink(self, path: Path) -> str | None:
        """Return the link target of *path*, or ``None`` when it is not a symlink."""
        try:
            return os.readlink(path)
        except (FileNotFoundError, OSError):
            return None

    def read_bytes(self, path: Path) -> bytes | None:
        """Return the content of *path* or ``None`` when missing."""
        try:
            return Path(path).read_bytes()
        except FileNotFoundError:
            return None

    def listdir(self, path: Path) -> list[str]:
        """Return the sorted entry names of *path* (empty when missing)."""
        try:
            return sorted(os.listdir(path))
        except FileNotFoundError:
            return []

    # ------------------------------------------------------------------
    # Primitive mutations
    # ------------------------------------------------------------------
    def mkdir(self, path: Path, mode: int) -> None:
        """Create a single directory."""
        os.mkdir(path, mode)

    def chmod(self, path: Path, mode: int) -> None:
        """Set permission bits on *path*."""
        os.chmod(path, mode)

    def chown(self, path: Path, uid: int, gid: int) -> None:
        """Set ownership of *path* without following symlinks."""
        os.chown(path, uid, gid, follow_symlinks=False)

    def symlink(self, target: str, path: Path) -> None:
        """Create a symlink at *path* pointing to *target*."""
        os.symlink(target, path)

    def rename(self, source: Path, destination: Path) -> None:
        """Atomically rename *source* over *destination*."""
        os.replace(source, destination)

    def unlink(self, path: Path) -> None:
        """Remove a file or symlink."""
        os.unlink(path)

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
        """Write *content* to a new temporary file in *directory* with final attributes."""
        fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{name}.", suffix=".tmp")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
                os.fchmod(handle.fileno(), mode)
                current = os.fstat(handle.fileno())
                if current.st_uid != uid or current.st_gid != gid:
                    os.fchown(handle.fileno(), uid, gid)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return tmp_path

    # ------------------------------------------------------------------
    # Composite helpers
    # ------------------------------------------------------------------
    def find_unused_backup(self, path: Path, suffix: str) -> Path:
        """Return the first unused ``<name><suffix>[.N].bak`` sibling of *path*."""
        prefix = f"{path.name}{suffix}"
        candidate = path.with_name(f"{prefix}{BACKUP_EXTENSION}")
        counter = 2
        while self.lstat(candidate) is not None:
            candidate = path.with_name(f"{prefix}{BACKUP_SEPARATOR}{counter}{BACKUP_EXTENSION}")
            counter += 1
        return candidate

    def rename_to_backup(self, path: Path, suffix: str) -> Path:
        """Move *path* aside to an unused backup name and return that name."""
        backup = self.find_unused_backup(path, suffix)
        LOGGER.info("Backing up %s to %s", path, backup.name)
        self.rename(path, backup)
        return backup

    def ensure_owner_mode(
        self,
        path: Path,
        uid: int,
        gid: int,
        mode: int | None = None,
    ) -> bool:
        """Assert ownership (and optionally mode) of *path*; return whether anything changed."""
        current = self.lstat(path)
        if current is None:
            raise FilesystemError(f"Cannot set attributes on missing path {path}")
        changed = False
        if mode is not None and stat.S_IMODE(current.st_mode) != mode:
            self.chmod(path, mode)
            changed = True
        if current.st_uid != uid or current.st_gid != gid:
            self.chown(path, uid, gid)
            changed = True
        return changed

    def ensure_directory(
        self,
        path: Path,
        mode: int,
        uid: int,
        gid: int,
        backup_suffix: str,
    ) -> bool:
        """Make *path* a directory with the given mode and owner."""
        current = self.lstat(path)
        changed = False
        if current is not None and not stat.S_ISDIR(current.st_mode):
            self.rename_to_backup(path, backup_suffix)
            current = None
            changed = True
        if current is None:
            self.mkdir(path, mode)
            changed = True
        if self.ensure_owner_mode(path, uid, gid, mode):
            changed = True
        return changed

    def ensure_symlink(
        self,
        path: Path,
        target: str,
        uid: int,
        gid: int,
        backup_suffix: str,
    ) -> bool:
        """Make *path* a symlink to *target*, backing up whatever was there."""
        current = self.lstat(path)
        if current is not None:
            if stat.S_ISLNK(current.st_mode) and self.readlink(path) == target:
                return self.ensure_owner_mode(path, uid, gid)
            self.rename_to_backup(path, backup_suffix)
        self.symlink(target, path)
        self.ensure_owner_mode(path, uid, gid)
        return True

    def atomic_write(
        self,
        path: Path,
        content: bytes,
        mode: int,
        uid: int,
        gid: int,
        backup_suffix: str | None,
    ) -> bool:
        """Replace *path* with *content* only when it differs.

        The new content is written to a temporary file in the same directory
        with its final mode and owner. When a previous file exists and a
        *backup_suffix* is given, its bytes are preserved under an unused
        backup name before the temporary file is renamed into place. When the
        content is already identical only the attributes are reasserted.
        """
        current = self.lstat(path)
        if current is not None and not stat.S_ISREG(current.st_mode):
            if backup_suffix is None:
                raise FilesystemError(f"{path} exists and is not a regular file")
            self.rename_to_backup(path, backup_suffix)
            current = None

        existing = self.read_bytes(path) if current is not None else None
        if existing == content:
            return self.ensure_owner_mode(path, uid, gid, mode)

        tmp_path = self.write_temp(path.parent, path.name, content, mode=mode, uid=uid, gid=gid)
        backup_tmp: Path | None = None
        try:
            if current is not None and existing is not None and backup_suffix is not None:
                backup = self.find_unused_backup(path, backup_suffix)
                backup_tmp = self.write_temp(
                    path.parent,
                    backup.name,
                    existing,
                    mode=stat.S_IMODE(current.st_mode),
                    uid=current.st_uid,
                    gid=current.st_gid,
                )
                self.rename(backup_tmp, backup)
            self.rename(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)
            if backup_tmp is not None:
                backup_tmp.unlink(missing_ok=True)
        return True

    def strip_file_prefix(self, path: Path, prefix: bytes) -> bool:
        """Remove an exact leading *prefix* from *path*, keeping its attributes."""
        content = self.read_bytes(path)
        if content is None or not content.startswith(prefix):
            return False
        current = os.stat(path)
        tmp_path = self.write_temp(
            path.parent,
            path.name,
            content[len(prefix) :],
            mode=stat.S_IMODE(current.st_mode),
            uid=current.st_uid,
            gid=current.st_gid,
        )
        try:
            self.rename(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = ["BACKUP_EXTENSION", "Filesystem", "FilesystemError"]
