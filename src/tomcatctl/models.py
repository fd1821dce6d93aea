"""Desired-state value types consumed by the reconciliation engine."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class Topology(str, Enum):
    """How many sites an instance serves."""

    PRIVATE = "private"
    SHARED = "shared"


@dataclass(frozen=True)
class ContextParameter:
    """A ``<Parameter>`` element inside a web application context."""

    name: str
    value: str
    override: bool = True
    description: str | None = None


@dataclass(frozen=True)
class DataSource:
    """A JNDI ``<Resource>`` DataSource bound inside a context."""

    name: str
    driver_class_name: str
    url: str
    username: str
    password: str
    max_active: int = 8
    max_idle: int = 4
    max_wait: int = 10000
    validation_query: str | None = None

    @property
    def num_tests_per_eviction_run(self) -> int:
        """Return how many idle connections one eviction run validates."""
        if self.max_active <= 0:
            return 50
        return max(3, self.max_active // 4)


@dataclass(frozen=True)
class WebContext:
    """A web application deployed under a site host."""

    path: str
    doc_base: str
    class_name: str | None = None
    cookies: bool = True
    cross_context: bool = False
    override: bool = False
    privileged: bool = False
    reloadable: bool = False
    use_naming: bool = True
    wrapper_class: str | None = None
    work_dir: str | None = None
    server_xml_configured: bool = True
    parameters: tuple[ContextParameter, ...] = ()
    data_sources: tuple[DataSource, ...] = ()


@dataclass(frozen=True)
class Site:
    """A hosted site; the sole occupant of a private instance or a shared member."""

    name: str
    gid: int
    disabled: bool = False
    list_first: bool = False
    primary_hostname: str | None = None
    aliases: tuple[str, ...] = ()
    bind_ips: tuple[str, ...] = ()
    contexts: tuple[WebContext, ...] = ()

    @property
    def enabled(self) -> bool:
        """Return whether the site should be served."""
        return not self.disabled

    @property
    def hostname(self) -> str:
        """Return the primary hostname, defaulting to the site name."""
        return self.primary_hostname or self.name


@dataclass(frozen=True)
class AjpWorker:
    """An AJP connector the front-end web server forwards to."""

    port: int
    bind: str = "127.0.0.1"


@dataclass(frozen=True)
class Instance:
    """One Tomcat runtime directory and the state it should converge to."""

    name: str
    root: Path
    uid: int
    gid: int
    version: str
    topology: Topology
    sites: tuple[Site, ...] = ()
    manual: bool = False
    disabled: bool = False
    shutdown_port: int | None = None
    shutdown_key: str | None = None
    ajp_workers: tuple[AjpWorker, ...] = ()
    max_post_size: int = 2097152
    max_parameter_count: int = 10000
    tomcat_authentication: bool = True
    unpack_wars: bool = True
    auto_deploy: bool = True
    undeploy_old_versions: bool = False

    @property
    def enabled_sites(self) -> tuple[Site, ...]:
        """Return member sites that are not disabled, preserving order."""
        return tuple(site for site in self.sites if site.enabled)

    @property
    def script_path(self) -> Path:
        """Return the start/stop script path."""
        return self.root / "bin" / "tomcat"

    @property
    def pid_path(self) -> Path:
        """Return the PID file written by the start script."""
        return self.root / "var" / "run" / "tomcat.pid"

    @property
    def daemon_link(self) -> Path:
        """Return the enable symlink consulted by the user-daemon runner."""
        return self.root / "daemon" / "tomcat"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of reconciling one instance.

    ``dirty`` means the running process must be restarted for on-disk changes
    to take effect. ``orphans`` lists paths inside the instance that are no
    longer referenced; the caller schedules them for removal.
    """

    instance: str
    dirty: bool
    orphans: tuple[Path, ...] = ()


__all__ = [
    "AjpWorker",
    "ContextParameter",
    "DataSource",
    "Instance",
    "ReconcileResult",
    "Site",
    "Topology",
    "WebContext",
]
