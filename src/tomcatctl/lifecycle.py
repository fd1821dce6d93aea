"""Start/stop control for Tomcat instances through the PID-file protocol.

The generated ``bin/tomcat`` script writes ``var/run/tomcat.pid`` on start and
removes it on stop. Liveness is decided from that file and ``/proc``.

``start`` and ``stop`` return a tri-state result: ``True`` when the call
acted, ``False`` when there was nothing to do, and ``None`` when the outcome
is unknown because a manual instance has no script. Callers must not read
``None`` as "stopped".
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .filesystem import Filesystem
from .models import Instance
from .providers.process import ProcessRunner

LOGGER = logging.getLogger(__name__)


class InstanceStatus(str, Enum):
    """Observed lifecycle state of an instance."""

    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"
    UNKNOWN = "unknown"
    NOT_INSTALLED = "not-installed"


def is_startable(instance: Instance, filesystem: Filesystem) -> bool:
    """Return whether *instance* should be running."""
    return (
        not instance.disabled
        and bool(instance.enabled_sites)
        and (not instance.manual or filesystem.lstat(instance.script_path) is not None)
    )


@dataclass(slots=True)
class LifecycleController:
    """Run an instance's start/stop script as its owner and track its PID file."""

    runner: ProcessRunner
    filesystem: Filesystem = field(default_factory=Filesystem)
    timeout: float | None = 60.0

    def read_pid(self, instance: Instance) -> int | None:
        """Return the PID recorded for *instance*.

        Raises :class:`ValueError` when the file exists but is not a number.
        """
        content = self.filesystem.read_bytes(instance.pid_path)
        if content is None:
            return None
        return int(content.decode("utf-8", errors="replace").strip())

    def _script_missing(self, instance: Instance) -> bool:
        return self.filesystem.lstat(instance.script_path) is None

    def _run(self, instance: Instance, command: str, timeout: float | None) -> None:
        self.runner.run_as(
            [str(instance.script_path), command],
            uid=instance.uid,
            gid=instance.gid,
            cwd=instance.root,
            timeout=self.timeout if timeout is None else timeout,
        )

    def start(self, instance: Instance, timeout: float | None = None) -> bool | None:
        """Start *instance* unless it is already running.

        *timeout* overrides the controller default for this call only.
        """
        if instance.manual and self._script_missing(instance):
            return None
        try:
            pid = self.read_pid(instance)
        except ValueError:
            LOGGER.warning("Unparsable PID file %s; assuming %s may be running", instance.pid_path, instance.name)
            return False
        if pid is not None:
            if self.runner.pid_alive(pid):
                return False
            LOGGER.warning(
                "PID file %s exists but process %s is not running; restarting %s",
                instance.pid_path,
                pid,
                instance.name,
            )
            self.filesystem.unlink(instance.pid_path)
        self._run(instance, "start", timeout)
        return True

    def stop(self, instance: Instance, timeout: float | None = None) -> bool | None:
        """Stop *instance* when its PID file is present."""
        if instance.manual and self._script_missing(instance):
            return None
        if self.filesystem.lstat(instance.pid_path) is None:
            return False
        self._run(instance, "stop", timeout)
        if self.filesystem.lstat(instance.pid_path) is not None:
            self.filesystem.unlink(instance.pid_path)
        return True

    def status(self, instance: Instance) -> InstanceStatus:
        """Return the observed lifecycle state of *instance*."""
        if self._script_missing(instance):
            return InstanceStatus.UNKNOWN if instance.manual else InstanceStatus.NOT_INSTALLED
        try:
            pid = self.read_pid(instance)
        except ValueError:
            return InstanceStatus.UNKNOWN
        if pid is None:
            return InstanceStatus.STOPPED
        return InstanceStatus.RUNNING if self.runner.pid_alive(pid) else InstanceStatus.CRASHED


__all__ = ["InstanceStatus", "LifecycleController", "is_startable"]
