"""Helpers for interacting with the tomcatctl state registry.

The registry directory (``/var/lib/tomcatctl/registry`` by default) stores YAML
artifacts: ``instances.yml`` holds the desired state of every instance on the
host and ``status.yml`` records the outcome of the latest reconciliation pass.
Files are written atomically so a crash never leaves a truncated registry.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping, Sequence
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except ImportError as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage tomcatctl state. Install with `pip install tomcatctl`."
    ) from exc

from ..models import (
    AjpWorker,
    ContextParameter,
    DataSource,
    Instance,
    Site,
    Topology,
    WebContext,
)

INSTANCES_FILE = "instances.yml"
STATUS_FILE = "status.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_instances(self) -> Mapping[str, object]:
        """Return the contents of ``instances.yml`` (empty mapping if missing)."""
        value = self.read(INSTANCES_FILE, default={"instances": []})
        return value if isinstance(value, Mapping) else {"instances": []}

    def write_instances(self, instances: Iterable[object]) -> None:
        """Persist instance entries to ``instances.yml``."""
        self.write(INSTANCES_FILE, {"instances": list(instances)})

    def read_status(self) -> dict[str, dict[str, Any]]:
        """Return the recorded per-instance status keyed by instance name."""
        value = self.read(STATUS_FILE, default={"instances": {}})
        if not isinstance(value, Mapping):
            return {}
        raw = value.get("instances", {})
        if not isinstance(raw, Mapping):
            return {}
        return {str(key): dict(entry) for key, entry in raw.items() if isinstance(entry, Mapping)}

    def record_status(self, entries: Mapping[str, Mapping[str, object]]) -> None:
        """Merge *entries* into ``status.yml``."""
        current = self.read_status()
        for name, entry in entries.items():
            current[name] = dict(entry)
        self.write(STATUS_FILE, {"instances": current})

    # Instance helpers -------------------------------------------------
    def get_instance(self, name: str) -> dict[str, Any] | None:
        """Return the instance mapping for *name* if registered."""
        for entry in _raw_entries(self.read_instances()):
            if entry.get("name") == name:
                return dict(entry)
        return None

    def load_instances(self, instances_root: Path) -> list[Instance]:
        """Parse every registered instance into an :class:`Instance`."""
        instances: list[Instance] = []
        seen: set[str] = set()
        for entry in _raw_entries(self.read_instances()):
            instance = parse_instance(entry, instances_root)
            if instance.name in seen:
                raise StateRegistryError(f"Instance '{instance.name}' is registered more than once")
            seen.add(instance.name)
            instances.append(instance)
        return instances

    def load_instance(self, name: str, instances_root: Path) -> Instance:
        """Parse the registered instance *name*."""
        entry = self.get_instance(name)
        if entry is None:
            raise StateRegistryError(f"Instance '{name}' not found in registry")
        return parse_instance(entry, instances_root)


def _raw_entries(data: Mapping[str, object]) -> list[Mapping[str, Any]]:
    raw_instances = data.get("instances", [])
    if not isinstance(raw_instances, list):
        raise StateRegistryError("Registry key 'instances' must be a list.")
    return [entry for entry in raw_instances if isinstance(entry, Mapping)]


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------
def _require(entry: Mapping[str, Any], key: str, where: str) -> Any:
    value = entry.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise StateRegistryError(f"{where}: missing '{key}'.")
    return value


def _as_int(value: object, key: str, where: str) -> int:
    if isinstance(value, bool):
        raise StateRegistryError(f"{where}: '{key}' must be an integer.")
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise StateRegistryError(f"{where}: '{key}' must be an integer.") from exc


def _as_bool(entry: Mapping[str, Any], key: str, default: bool, where: str) -> bool:
    value = entry.get(key, default)
    if not isinstance(value, bool):
        raise StateRegistryError(f"{where}: '{key}' must be true or false.")
    return value


def _as_strings(entry: Mapping[str, Any], key: str, where: str) -> tuple[str, ...]:
    value = entry.get(key) or []
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise StateRegistryError(f"{where}: '{key}' must be a list.")
    return tuple(str(item) for item in value)


def _as_mappings(entry: Mapping[str, Any], key: str, where: str) -> list[Mapping[str, Any]]:
    value = entry.get(key) or []
    if not isinstance(value, list) or not all(isinstance(item, Mapping) for item in value):
        raise StateRegistryError(f"{where}: '{key}' must be a list of mappings.")
    return value


def _optional_str(entry: Mapping[str, Any], key: str) -> str | None:
    value = entry.get(key)
    return None if value is None else str(value)


def parse_parameter(entry: Mapping[str, Any], where: str) -> ContextParameter:
    """Parse a context ``<Parameter>`` entry."""
    return ContextParameter(
        name=str(_require(entry, "name", where)),
        value=str(entry.get("value", "")),
        override=_as_bool(entry, "override", True, where),
        description=_optional_str(entry, "description"),
    )


def parse_data_source(entry: Mapping[str, Any], where: str) -> DataSource:
    """Parse a context DataSource entry."""
    return DataSource(
        name=str(_require(entry, "name", where)),
        driver_class_name=str(entry.get("driver_class_name", "")),
        url=str(_require(entry, "url", where)),
        username=str(entry.get("username", "")),
        password=str(entry.get("password", "")),
        max_active=_as_int(entry.get("max_active", 8), "max_active", where),
        max_idle=_as_int(entry.get("max_idle", 4), "max_idle", where),
        max_wait=_as_int(entry.get("max_wait", 10000), "max_wait", where),
        validation_query=_optional_str(entry, "validation_query"),
    )


def parse_context(entry: Mapping[str, Any], where: str) -> WebContext:
    """Parse a web application context entry."""
    path = str(entry.get("path", ""))
    where = f"{where} context '{path}'"
    return WebContext(
        path=path,
        doc_base=str(_require(entry, "doc_base", where)),
        class_name=_optional_str(entry, "class_name"),
        cookies=_as_bool(entry, "cookies", True, where),
        cross_context=_as_bool(entry, "cross_context", False, where),
        override=_as_bool(entry, "override", False, where),
        privileged=_as_bool(entry, "privileged", False, where),
        reloadable=_as_bool(entry, "reloadable", False, where),
        use_naming=_as_bool(entry, "use_naming", True, where),
        wrapper_class=_optional_str(entry, "wrapper_class"),
        work_dir=_optional_str(entry, "work_dir"),
        server_xml_configured=_as_bool(entry, "server_xml_configured", True, where),
        parameters=tuple(parse_parameter(item, where) for item in _as_mappings(entry, "parameters", where)),
        data_sources=tuple(
            parse_data_source(item, where) for item in _as_mappings(entry, "data_sources", where)
        ),
    )


def parse_site(entry: Mapping[str, Any], default_gid: int, where: str) -> Site:
    """Parse a member site entry."""
    name = str(_require(entry, "name", where))
    where = f"{where} site '{name}'"
    return Site(
        name=name,
        gid=_as_int(entry.get("gid", default_gid), "gid", where),
        disabled=_as_bool(entry, "disabled", False, where),
        list_first=_as_bool(entry, "list_first", False, where),
        primary_hostname=_optional_str(entry, "primary_hostname"),
        aliases=_as_strings(entry, "aliases", where),
        bind_ips=_as_strings(entry, "bind_ips", where),
        contexts=tuple(parse_context(item, where) for item in _as_mappings(entry, "contexts", where)),
    )


def parse_instance(entry: Mapping[str, Any], instances_root: Path) -> Instance:
    """Parse a registry entry into an :class:`Instance`."""
    name = str(_require(entry, "name", "Instance entry")).strip()
    if "/" in name or name in {".", ".."}:
        raise StateRegistryError(f"Instance name '{name}' is not a valid directory name.")
    where = f"Instance '{name}'"
    topology_raw = str(entry.get("topology", Topology.SHARED.value)).lower()
    try:
        topology = Topology(topology_raw)
    except ValueError as exc:
        raise StateRegistryError(f"{where}: unknown topology '{topology_raw}'.") from exc

    uid = _as_int(_require(entry, "uid", where), "uid", where)
    gid = _as_int(_require(entry, "gid", where), "gid", where)
    sites = tuple(parse_site(item, gid, where) for item in _as_mappings(entry, "sites", where))
    if topology is Topology.PRIVATE and len(sites) > 1:
        raise StateRegistryError(f"{where}: a private instance serves exactly one site.")

    workers = tuple(
        AjpWorker(
            port=_as_int(_require(item, "port", where), "port", where),
            bind=str(item.get("bind", "127.0.0.1")),
        )
        for item in _as_mappings(entry, "ajp_workers", where)
    )
    shutdown_port = entry.get("shutdown_port")
    root = entry.get("root")
    return Instance(
        name=name,
        root=Path(root) if root else instances_root / name,
        uid=uid,
        gid=gid,
        version=str(_require(entry, "version", where)),
        topology=topology,
        sites=sites,
        manual=_as_bool(entry, "manual", False, where),
        disabled=_as_bool(entry, "disabled", False, where),
        shutdown_port=None if shutdown_port is None else _as_int(shutdown_port, "shutdown_port", where),
        shutdown_key=_optional_str(entry, "shutdown_key"),
        ajp_workers=workers,
        max_post_size=_as_int(entry.get("max_post_size", 2097152), "max_post_size", where),
        max_parameter_count=_as_int(entry.get("max_parameter_count", 10000), "max_parameter_count", where),
        tomcat_authentication=_as_bool(entry, "tomcat_authentication", True, where),
        unpack_wars=_as_bool(entry, "unpack_wars", True, where),
        auto_deploy=_as_bool(entry, "auto_deploy", True, where),
        undeploy_old_versions=_as_bool(entry, "undeploy_old_versions", False, where),
    )


__all__ = ["StateRegistry", "StateRegistryError", "parse_instance"]
