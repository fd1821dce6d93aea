"""Version descriptor table.

Each supported Tomcat line is described by data rather than by a manager
subclass: the package that provides the shared template installation, the
template directory under ``/opt``, the per-release jar changes used to build
its :class:`~tomcatctl.ladder.VersionLadder`, and the small differences in
its install plan.
"""
from __future__ import annotations

from dataclasses import dataclass

from .ladder import PackageVersion, UnsupportedVersionError, VersionLadder, VersionMilestone, library_changes


@dataclass(frozen=True)
class JarChanges:
    """Bundled-jar changes shipped with one package release."""

    release: str
    renames: tuple[tuple[str, str], ...] = ()
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()


@dataclass(frozen=True)
class VersionDescriptor:
    """Everything the reconciliation engine needs to know about one Tomcat line."""

    key: str
    package_name: str
    template_dir: str
    releases: tuple[JarChanges, ...]
    includes_migrate: bool = False

    def lib_prefix(self, opt_slash: str) -> str:
        """Return the link target prefix for jars in an instance ``lib/`` directory."""
        return f"../{opt_slash}{self.template_dir}/lib/"

    def ladder(self, opt_slash: str) -> VersionLadder:
        """Expand the jar change table into a ladder for an instance at *opt_slash*."""
        prefix = self.lib_prefix(opt_slash)
        milestones = tuple(
            VersionMilestone(
                PackageVersion.parse(entry.release),
                library_changes(prefix, entry.renames, entry.added, entry.removed),
            )
            for entry in self.releases
        )
        return VersionLadder(self.package_name, milestones)


TOMCAT_9_0 = VersionDescriptor(
    key="9.0",
    package_name="apache-tomcat_9_0",
    template_dir="apache-tomcat-9.0",
    releases=(
        JarChanges("9.0.10-1"),
        JarChanges(
            "9.0.11-1",
            renames=(
                ("mysql-connector-java-8.0.12.jar", "mysql-connector-java-8.0.13.jar"),
                ("postgresql-42.2.4.jar", "postgresql-42.2.5.jar"),
            ),
            added=("tomcat-i18n-ru.jar",),
        ),
        JarChanges(
            "9.0.14-1",
            renames=(
                ("ecj-4.7.3a.jar", "ecj-4.9.jar"),
                ("mysql-connector-java-8.0.13.jar", "mysql-connector-java-8.0.15.jar"),
            ),
            added=(
                "tomcat-i18n-de.jar",
                "tomcat-i18n-ko.jar",
                "tomcat-i18n-pt-BR.jar",
                "tomcat-i18n-zh-CN.jar",
            ),
        ),
        JarChanges("9.0.16-1", added=("tomcat-i18n-cs.jar",)),
        JarChanges(
            "9.0.19-1",
            renames=(
                ("ecj-4.9.jar", "ecj-4.10.jar"),
                ("mysql-connector-java-8.0.15.jar", "mysql-connector-java-8.0.16.jar"),
            ),
        ),
        JarChanges("9.0.21-1", renames=(("postgresql-42.2.5.jar", "postgresql-42.2.6.jar"),)),
        JarChanges(
            "9.0.22-1",
            renames=(
                ("ecj-4.10.jar", "ecj-4.12.jar"),
                ("mysql-connector-java-8.0.16.jar", "mysql-connector-java-8.0.17.jar"),
            ),
        ),
        JarChanges("9.0.26-1", renames=(("postgresql-42.2.6.jar", "postgresql-42.2.8.jar"),)),
        JarChanges(
            "9.0.27-1",
            renames=(
                ("ecj-4.12.jar", "ecj-4.13.jar"),
                ("mysql-connector-java-8.0.17.jar", "mysql-connector-java-8.0.18.jar"),
                ("postgresql-42.2.8.jar", "postgresql-42.2.9.jar"),
            ),
        ),
        JarChanges(
            "9.0.30-1",
            renames=(("mysql-connector-java-8.0.18.jar", "mysql-connector-java-8.0.19.jar"),),
            added=("catalina-ssi.jar",),
        ),
    ),
)

TOMCAT_10_1 = VersionDescriptor(
    key="10.1",
    package_name="apache-tomcat_10_1",
    template_dir="apache-tomcat-10.1",
    includes_migrate=True,
    releases=(
        JarChanges("10.1.2-1"),
        JarChanges("10.1.2-2", renames=(("postgresql-42.5.0.jar", "postgresql-42.5.1.jar"),)),
        JarChanges(
            "10.1.4-1",
            renames=(
                ("jakartaee-migration-1.0.5-shaded.jar", "jakartaee-migration-1.0.6-shaded.jar"),
            ),
        ),
        JarChanges(
            "10.1.5-1",
            renames=(
                ("ecj-4.25.jar", "ecj-4.26.jar"),
                ("mysql-connector-j-8.0.31.jar", "mysql-connector-j-8.0.32.jar"),
                ("postgresql-42.5.1.jar", "postgresql-42.5.4.jar"),
            ),
        ),
    ),
)

DESCRIPTORS: dict[str, VersionDescriptor] = {
    descriptor.key: descriptor for descriptor in (TOMCAT_9_0, TOMCAT_10_1)
}


def get_descriptor(key: str) -> VersionDescriptor:
    """Return the descriptor for version *key* (``"9.0"``, ``"10.1"``)."""
    try:
        return DESCRIPTORS[key]
    except KeyError as exc:
        known = ", ".join(sorted(DESCRIPTORS))
        raise UnsupportedVersionError(
            f"Unsupported Tomcat version '{key}' (known: {known})"
        ) from exc


__all__ = [
    "DESCRIPTORS",
    "JarChanges",
    "TOMCAT_10_1",
    "TOMCAT_9_0",
    "VersionDescriptor",
    "get_descriptor",
]
