"""Rendering of the per-instance files regenerated on every pass.

These are produced in memory and handed to :meth:`Filesystem.atomic_write`,
which only touches the disk when the bytes differ. Output must therefore be a
pure function of the instance state.
"""
from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from .models import AjpWorker, Instance, Site, Topology, WebContext
from .templates import TemplateEngine

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'
AUTO_WARNING_XML = (
    "<!--\n"
    "  Warning: This file is automatically created by tomcatctl.  Any manual changes\n"
    "  to this file will be overwritten.  Set \"manual: true\" for this instance in\n"
    "  the instance registry to be able to make permanent changes to this file.\n"
    "-->\n"
)


class InstanceConfigurationError(RuntimeError):
    """Raised when an instance's desired state cannot be rendered."""


@dataclass(frozen=True)
class HostEntry:
    """One ``<Host>`` element of a shared instance."""

    name: str
    app_base: str
    aliases: tuple[str, ...]
    contexts: tuple[WebContext, ...]


def ordered_sites(sites: tuple[Site, ...]) -> Iterator[Site]:
    """Yield enabled sites, ``list_first`` sites before the rest, each group in order."""
    for list_first in (True, False):
        for site in sites:
            if site.list_first == list_first and site.enabled:
                yield site


def work_directories(instance: Instance) -> dict[str, int]:
    """Map each ``work/Catalina`` entry Tomcat uses for the enabled hosts to its group."""
    enabled = instance.enabled_sites
    if instance.topology is Topology.PRIVATE:
        return {"localhost": enabled[0].gid} if enabled else {}
    directories: dict[str, int] = {}
    for site in enabled:
        directories.setdefault(site.hostname, site.gid)
    return directories


def shared_hosts(instance: Instance, www_root: Path) -> tuple[HostEntry, ...]:
    """Build the host list for a shared instance, with de-duplicated aliases."""
    hosts: list[HostEntry] = []
    for site in ordered_sites(instance.sites):
        primary = site.hostname.lower()
        used = [primary]
        for alias in site.aliases:
            name = alias.lower()
            if name not in used:
                used.append(name)
        # Sites listed first also answer on their IP addresses.
        if site.list_first:
            for address in site.bind_ips:
                if address not in used:
                    used.append(address)
        hosts.append(
            HostEntry(
                name=primary,
                app_base=f"{www_root}/{site.name}/webapps",
                aliases=tuple(used[1:]),
                contexts=site.contexts,
            )
        )
    return tuple(hosts)


def _single_worker(instance: Instance) -> AjpWorker:
    if len(instance.ajp_workers) != 1:
        raise InstanceConfigurationError(
            f"Expected exactly one AJP worker for instance {instance.name}, "
            f"found {len(instance.ajp_workers)}"
        )
    if instance.shutdown_port is None:
        raise InstanceConfigurationError(f"Unable to find shutdown port for instance {instance.name}")
    if not instance.shutdown_key:
        raise InstanceConfigurationError(f"Unable to find shutdown key for instance {instance.name}")
    return instance.ajp_workers[0]


def render_server_xml(templates: TemplateEngine, instance: Instance, www_root: Path) -> bytes:
    """Render ``conf/server.xml``; manual instances get no warning banner."""
    worker = _single_worker(instance)
    banner = "" if instance.manual else AUTO_WARNING_XML
    if instance.topology is Topology.SHARED:
        hosts = shared_hosts(instance, www_root)
        text = templates.render_to_string(
            "tomcat/server-shared.xml.j2",
            {
                "instance": instance,
                "worker": worker,
                "banner": banner,
                "default_host": hosts[0].name if hosts else "localhost",
                "hosts": hosts,
            },
        )
    else:
        contexts = tuple(context for site in instance.sites for context in site.contexts)
        text = templates.render_to_string(
            "tomcat/server-private.xml.j2",
            {
                "instance": instance,
                "worker": worker,
                "banner": banner,
                "contexts": contexts,
            },
        )
    return text.encode("utf-8")


def render_members(templates: TemplateEngine, instance: Instance, www_root: Path) -> bytes:
    """Render ``bin/profile.d/httpd-sites.sh`` listing the enabled sites."""
    text = templates.render_to_string(
        "tomcat/httpd-sites.sh.j2",
        {"sites": [site.name for site in instance.enabled_sites], "www_root": str(www_root)},
    )
    return text.encode("utf-8")


def render_readme(
    templates: TemplateEngine,
    instance: Instance,
    opt_root: Path,
    template_dir: str,
) -> bytes:
    """Render the ``README.txt`` change marker."""
    text = templates.render_to_string(
        "tomcat/readme.txt.j2",
        {
            "instance": instance.name,
            "install_dir": str(instance.root),
            "opt_root": str(opt_root),
            "template_dir": template_dir,
        },
    )
    return text.encode("utf-8")


__all__ = [
    "AUTO_WARNING_XML",
    "HostEntry",
    "InstanceConfigurationError",
    "XML_DECLARATION",
    "ordered_sites",
    "render_members",
    "render_readme",
    "render_server_xml",
    "shared_hosts",
    "work_directories",
]
