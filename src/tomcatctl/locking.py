"""Advisory file locks serialising mutations of Tomcat instances.

Locks live under the runtime directory. ``tomcatctl.lock`` is the global lock
taken by fleet-wide passes; ``<instance>.lock`` guards a single instance so a
rebuild never races a start/stop of the same directory. Lock files persist
after release for diagnostics and record the holder's PID.
"""
from __future__ import annotations

import errno
import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

GLOBAL_LOCK_NAME = "tomcatctl"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock and how long acquisition took."""

    path: Path
    wait_ms: int
    fd: int


@dataclass(slots=True)
class LockBundle:
    """Several held locks acquired in a fixed order."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting across the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global and per-instance locks with timeouts."""

    def __init__(self, run_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout."""
        self.run_dir = Path(run_dir)
        self.default_timeout = float(default_timeout)

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.run_dir / f"{safe}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the fleet-wide lock."""
        with self._acquire(self.lock_path(GLOBAL_LOCK_NAME), timeout) as handle:
            yield handle

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single instance."""
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        include_global: bool = True,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock (optionally) then each instance lock in sorted order."""
        with ExitStack() as stack:
            handles: list[LockHandle] = []
            if include_global:
                handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles=handles)

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as exc:
                    if exc.errno not in (errno.EAGAIN, errno.EACCES):
                        raise
                    if time.monotonic() - start >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}"
                        ) from exc
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            payload = json.dumps({"pid": os.getpid(), "path": str(path)})
            os.ftruncate(fd, 0)
            os.pwrite(fd, payload.encode("utf-8"), 0)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms, fd=fd)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
