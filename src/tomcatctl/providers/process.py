"""Process execution boundary used by the lifecycle controller."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class ProcessError(RuntimeError):
    """Raised when a managed command cannot be run or exits unsuccessfully."""


class ProcessRunner:
    """Run commands as another user and check process liveness."""

    def __init__(self, *, proc_root: Path = Path("/proc")) -> None:
        """Initialise the runner; *proc_root* is where ``/proc/<pid>`` entries live."""
        self.proc_root = proc_root

    def run_as(
        self,
        argv: Sequence[str],
        *,
        uid: int,
        gid: int,
        cwd: Path,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *argv* as *uid*/*gid* in *cwd*.

        When *timeout* expires the child is killed and :class:`ProcessError`
        is raised, so a hung script never outlives its caller's bound.
        """
        LOGGER.debug("Running %s as %s:%s in %s", " ".join(argv), uid, gid, cwd)
        identity: dict[str, object] = {}
        if (uid, gid) != (os.geteuid(), os.getegid()):
            identity = {"user": uid, "group": gid, "extra_groups": []}
        try:
            result = subprocess.run(  # noqa: S603
                list(argv),
                cwd=str(cwd),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
                **identity,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProcessError(f"{argv[0]} timed out after {timeout}s and was killed") from exc
        except (FileNotFoundError, PermissionError) as exc:
            raise ProcessError(f"{argv[0]} could not be executed: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            message = detail or f"exit code {result.returncode}"
            raise ProcessError(f"{' '.join(argv)} failed: {message}")
        return result

    def pid_alive(self, pid: int) -> bool:
        """Return whether a process with *pid* exists."""
        return (self.proc_root / str(pid)).exists()


__all__ = ["ProcessError", "ProcessRunner"]
