"""Fleet-wide rebuild and restart passes.

:class:`FleetDriver` reconciles every registered instance in turn, retires
directories nothing references any more and finally brings each process in
line with its desired state. A failure in one instance is logged and recorded;
the pass always continues with the next instance.
"""
from __future__ import annotations

import concurrent.futures
import logging
import pwd
import stat
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .config import RestartConfig
from .filesystem import BACKUP_EXTENSION, Filesystem, FilesystemError
from .lifecycle import LifecycleController, is_startable
from .manager import ROOT_UID, InstanceManager
from .models import Instance
from .providers.process import ProcessError

LOGGER = logging.getLogger(__name__)

DEFAULT_KEEP_DIRS = ("lost+found", "aquota.group", "aquota.user")


class RestartOutcome(str, Enum):
    """What the restart pass did for one instance."""

    RESTARTED = "restarted"
    STARTED = "started"
    STOPPED = "stopped"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    UNKNOWN = "unknown"
    TIMEOUT = "timeout"
    FAILED = "failed"


@dataclass(frozen=True)
class InstanceFailure:
    """An instance whose reconciliation raised."""

    instance: str
    error: str


@dataclass(slots=True)
class FleetResult:
    """Merged outcome of a fleet rebuild."""

    reconciled: list[str] = field(default_factory=list)
    restart_set: list[str] = field(default_factory=list)
    retired: list[Path] = field(default_factory=list)
    failures: list[InstanceFailure] = field(default_factory=list)
    restarts: dict[str, RestartOutcome] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Return ``True`` when no instance failed."""
        return not self.failures

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "reconciled": list(self.reconciled),
            "restart_set": list(self.restart_set),
            "retired": [str(path) for path in self.retired],
            "failures": [
                {"instance": failure.instance, "error": failure.error} for failure in self.failures
            ],
            "restarts": {name: outcome.value for name, outcome in self.restarts.items()},
        }


def account_home_directories() -> list[str]:
    """Return the home directory of every account known to the system."""
    return [entry.pw_dir for entry in pwd.getpwall()]


@dataclass(slots=True)
class FleetDriver:
    """Drive :class:`InstanceManager` and :class:`LifecycleController` across all instances."""

    manager: InstanceManager
    lifecycle: LifecycleController
    instances_root: Path
    filesystem: Filesystem = field(default_factory=Filesystem)
    backup_suffix_format: str = "-%Y-%m-%d"
    keep_dirs: tuple[str, ...] = DEFAULT_KEEP_DIRS
    user_daemons_pid: Path = Path("/var/run/aoserv-user-daemons.pid")
    restart_config: RestartConfig = field(default_factory=RestartConfig)
    home_directories: Callable[[], Iterable[str]] = account_home_directories
    clock: Callable[[], datetime] = datetime.now
    sleep: Callable[[float], None] = time.sleep
    monotonic: Callable[[], float] = time.monotonic

    def backup_suffix(self) -> str:
        """Return the backup suffix for this pass."""
        return self.clock().strftime(self.backup_suffix_format)

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------
    def rebuild(
        self,
        instances: Sequence[Instance],
        *,
        restart: bool = True,
        only: Iterable[str] | None = None,
    ) -> FleetResult:
        """Reconcile *instances*, retire orphans and optionally run the restart pass.

        When *only* names a subset, just those instances are reconciled and
        restarted, and orphan instance directories are left alone since the
        full registry was not considered.
        """
        wanted = None if only is None else set(only)
        selected = [item for item in instances if wanted is None or item.name in wanted]
        if wanted is not None:
            missing = wanted - {item.name for item in selected}
            for name in sorted(missing):
                LOGGER.warning("Instance %s is not registered; skipping", name)

        suffix = self.backup_suffix()
        result = FleetResult()
        for instance in selected:
            try:
                outcome = self.manager.reconcile(instance, suffix)
            except Exception as exc:  # noqa: BLE001 - recorded, the pass continues
                LOGGER.exception("Failed to rebuild instance %s", instance.name)
                result.failures.append(InstanceFailure(instance=instance.name, error=str(exc)))
                continue
            result.reconciled.append(instance.name)
            if outcome.dirty and instance.name not in result.restart_set:
                result.restart_set.append(instance.name)
            for orphan in outcome.orphans:
                try:
                    result.retired.append(self.filesystem.rename_to_backup(orphan, suffix))
                except (OSError, FilesystemError) as exc:
                    LOGGER.exception("Failed to retire %s", orphan)
                    result.failures.append(InstanceFailure(instance=instance.name, error=str(exc)))

        if wanted is None:
            self._retire_unregistered(instances, suffix, result)

        if restart:
            result.restarts = self.restart(selected, result.restart_set)
        return result

    def _retire_unregistered(
        self,
        instances: Sequence[Instance],
        suffix: str,
        result: FleetResult,
    ) -> None:
        if self.filesystem.lstat(self.instances_root) is None:
            return
        registered = {item.root for item in instances}
        keep = set(self.keep_dirs)
        homes = {Path(home) for home in self.home_directories()}
        for name in self.filesystem.listdir(self.instances_root):
            if name in keep or name.endswith(BACKUP_EXTENSION):
                continue
            directory = self.instances_root / name
            if directory in registered:
                continue
            try:
                self._stop_daemons(directory, suffix)
                if directory in homes:
                    LOGGER.info("Not removing %s: it is a home directory", directory)
                    continue
                LOGGER.info("Scheduling for removal: %s", directory)
                result.retired.append(self.filesystem.rename_to_backup(directory, suffix))
            except (OSError, FilesystemError) as exc:
                LOGGER.exception("Failed to retire %s", directory)
                result.failures.append(InstanceFailure(instance=name, error=str(exc)))

    def _stop_daemons(self, directory: Path, suffix: str) -> None:
        """Stop and disable every daemon script of an unregistered directory."""
        daemon_dir = directory / "daemon"
        daemon_stat = self.filesystem.lstat(daemon_dir)
        if daemon_stat is None or not stat.S_ISDIR(daemon_stat.st_mode):
            return
        for script in self.filesystem.listdir(daemon_dir):
            script_path = daemon_dir / script
            if daemon_stat.st_uid != ROOT_UID:
                try:
                    self.lifecycle.runner.run_as(
                        [str(script_path), "stop"],
                        uid=daemon_stat.st_uid,
                        gid=daemon_stat.st_gid,
                        cwd=directory,
                        timeout=self.restart_config.timeout,
                    )
                except ProcessError as exc:
                    LOGGER.warning("Unable to stop %s: %s", script_path, exc)
            script_stat = self.filesystem.lstat(script_path)
            if script_stat is not None and stat.S_ISLNK(script_stat.st_mode):
                self.filesystem.unlink(script_path)
            else:
                self.filesystem.rename_to_backup(script_path, suffix)

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------
    def restart(
        self,
        instances: Sequence[Instance],
        restart_set: Iterable[str] = (),
    ) -> dict[str, RestartOutcome]:
        """Bring each process in line with its desired state.

        Instances named in *restart_set* are stopped and started again; other
        startable instances are started and the rest are stopped. Each
        instance is awaited for at most ``restart_config.timeout`` seconds,
        and its stop, grace delay and start share that one deadline.
        """
        pending = set(restart_set)
        outcomes: dict[str, RestartOutcome] = {}
        timeout = self.restart_config.timeout
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.restart_config.max_workers
        ) as executor:
            for instance in instances:
                future = executor.submit(
                    self._restart_one, instance, instance.name in pending, self.monotonic() + timeout
                )
                try:
                    outcomes[instance.name] = future.result(timeout=timeout)
                except concurrent.futures.TimeoutError:
                    LOGGER.warning("Timed out after %ss restarting %s", timeout, instance.name)
                    outcomes[instance.name] = RestartOutcome.TIMEOUT
                except Exception as exc:  # noqa: BLE001 - recorded, the pass continues
                    LOGGER.warning("Unable to restart %s: %s", instance.name, exc)
                    outcomes[instance.name] = RestartOutcome.FAILED
        return outcomes

    def _remaining(self, deadline: float) -> float:
        return max(deadline - self.monotonic(), 0.0)

    def _restart_one(self, instance: Instance, needs_restart: bool, deadline: float) -> RestartOutcome:
        if not is_startable(instance, self.filesystem):
            return _outcome(
                self.lifecycle.stop(instance, timeout=self._remaining(deadline)), RestartOutcome.STOPPED
            )
        if needs_restart:
            stopped = self.lifecycle.stop(instance, timeout=self._remaining(deadline))
            if stopped is None:
                return RestartOutcome.UNKNOWN
            if stopped:
                self.sleep(min(self.restart_config.grace_delay, self._remaining(deadline)))
            remaining = self._remaining(deadline)
            if remaining <= 0:
                LOGGER.warning("No time left to start %s after stopping it", instance.name)
                return RestartOutcome.TIMEOUT
            self.lifecycle.start(instance, timeout=remaining)
            return RestartOutcome.RESTARTED
        if self.filesystem.lstat(self.user_daemons_pid) is not None:
            LOGGER.info("Skipping start of %s because %s exists", instance.name, self.user_daemons_pid)
            return RestartOutcome.SKIPPED
        return _outcome(
            self.lifecycle.start(instance, timeout=self._remaining(deadline)), RestartOutcome.STARTED
        )


def _outcome(acted: bool | None, when_acted: RestartOutcome) -> RestartOutcome:
    if acted is None:
        return RestartOutcome.UNKNOWN
    return when_acted if acted else RestartOutcome.UNCHANGED


__all__ = [
    "FleetDriver",
    "FleetResult",
    "InstanceFailure",
    "RestartOutcome",
    "account_home_directories",
]
