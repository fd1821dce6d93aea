"""Install plans for Tomcat instance directories.

A plan lists, in order, every file and directory an instance directory is
made of. The same plan serves a fresh install and a full rebuild; only the
private topology adds seed content on a fresh install. Retired files from
older layouts are listed as :class:`~tomcatctl.install.Delete` so a rebuild
moves them aside.
"""
from __future__ import annotations

from collections.abc import Callable

from .install import (
    Copy,
    Delete,
    Generated,
    InstallAction,
    InstallContext,
    Mkdir,
    ProfileScript,
    Symlink,
    SymlinkAll,
)
from .models import Topology
from .versions import VersionDescriptor

KILL_DELAY_ATTEMPTS = 50
KILL_DELAY_INTERVAL = 0.1
CRASH_RESTART_DELAY = 5
HEAP_SIZE = "128M"
UMASK = "0027"

SHARED_CONF_MODE = 0o770
# Readable by the web server for passwd/group files kept in conf/.
PRIVATE_CONF_MODE = 0o775


def rendered(template_name: str, **extra: object) -> Callable[[InstallContext], str]:
    """Return a generator rendering *template_name* for an install context."""

    def _generate(ctx: InstallContext) -> str:
        return ctx.render(template_name, **extra)

    return _generate


def jdk_link_target(opt_slash: str, jdk_profile: str) -> str:
    """Return the ``bin/profile.d/jdk.sh`` link target for a JDK profile under the opt root."""
    return f"../../{opt_slash}{jdk_profile.lstrip('/')}"


def tomcat_script(topology: Topology) -> Callable[[InstallContext], str]:
    """Return the generator for ``bin/tomcat``."""
    return rendered(
        "tomcat/tomcat.sh.j2",
        shared=topology is Topology.SHARED,
        kill_attempts=KILL_DELAY_ATTEMPTS,
        kill_interval=KILL_DELAY_INTERVAL,
        crash_delay=CRASH_RESTART_DELAY,
    )


def common_plan(
    descriptor: VersionDescriptor,
    conf_mode: int,
    jdk_target: str,
) -> list[InstallAction]:
    """Return the actions shared by every topology."""
    plan: list[InstallAction] = [
        Mkdir("bin", 0o770),
        Symlink("bin/bootstrap.jar"),
        ProfileScript("bin/catalina.sh"),
        ProfileScript("bin/ciphers.sh"),
        Symlink("bin/commons-daemon.jar"),
        Delete("bin/commons-logging-api.jar"),
        ProfileScript("bin/configtest.sh"),
        ProfileScript("bin/digest.sh"),
        Delete("bin/jasper.sh"),
        Delete("bin/jspc.sh"),
    ]
    if descriptor.includes_migrate:
        plan.append(ProfileScript("bin/migrate.sh"))
    plan.extend(
        [
            Delete("bin/profile"),
            Mkdir("bin/profile.d", 0o750),
            Generated("bin/profile.d/catalina.sh", 0o640, rendered("tomcat/profile.d/catalina.sh.j2")),
            Generated(
                "bin/profile.d/java-disable-usage-tracking.sh",
                0o640,
                rendered("tomcat/profile.d/java-disable-usage-tracking.sh.j2"),
            ),
            Generated("bin/profile.d/java-headless.sh", 0o640, rendered("tomcat/profile.d/java-headless.sh.j2")),
            Generated(
                "bin/profile.d/java-heapsize.sh",
                0o640,
                rendered("tomcat/profile.d/java-heapsize.sh.j2", heap_size=HEAP_SIZE),
            ),
            Generated("bin/profile.d/java-server.sh", 0o640, rendered("tomcat/profile.d/java-server.sh.j2")),
            Symlink("bin/profile.d/jdk.sh", jdk_target),
            Generated("bin/profile.d/umask.sh", 0o640, rendered("tomcat/profile.d/umask.sh.j2", umask=UMASK)),
            Symlink("bin/setclasspath.sh"),
            Generated("bin/shutdown.sh", 0o700, rendered("tomcat/shutdown.sh.j2")),
            Generated("bin/startup.sh", 0o700, rendered("tomcat/startup.sh.j2")),
            Delete("bin/tomcat-jni.jar"),
            Symlink("bin/tomcat-juli.jar"),
            Symlink("bin/tool-wrapper.sh"),
            ProfileScript("bin/version.sh"),
            Delete("common"),
            Mkdir("conf", conf_mode),
            Mkdir("conf/Catalina", 0o770),
            Symlink("conf/catalina.policy"),
            Symlink("conf/catalina.properties"),
            Symlink("conf/context.xml"),
            Symlink("conf/jaspic-providers.xml"),
            Symlink("conf/jaspic-providers.xsd"),
            Symlink("conf/logging.properties"),
            # Moved aside so the regenerated file (auto or manual) starts clean.
            Delete("conf/server.xml"),
            Copy("conf/tomcat-users.xml", 0o660),
            Symlink("conf/tomcat-users.xsd"),
            Symlink("conf/web.xml"),
            Mkdir("daemon", 0o770),
            Mkdir("lib", 0o770),
            SymlinkAll("lib"),
            Symlink("logs", "var/log"),
            # Rewritten after the ladder so minor updates without link changes are noticed.
            Delete("RELEASE-NOTES"),
            Delete("shared"),
            Delete("server"),
            Mkdir("temp", 0o770),
            Mkdir("var", 0o770),
            Mkdir("var/log", 0o770),
            Mkdir("var/run", 0o770),
            Mkdir("work", 0o750),
            Mkdir("work/Catalina", 0o750),
            Delete("conf/Tomcat-Apache"),
        ]
    )
    return plan


def build_plan(
    descriptor: VersionDescriptor,
    topology: Topology,
    *,
    is_upgrade: bool,
    jdk_target: str,
) -> tuple[InstallAction, ...]:
    """Return the full install plan for one instance.

    *jdk_target* is the already-resolved link target for ``bin/profile.d/jdk.sh``.
    """
    if topology is Topology.SHARED:
        plan = common_plan(descriptor, SHARED_CONF_MODE, jdk_target)
        plan.extend(
            [
                Delete("bin/profile.sites"),
                Delete("bin/profile.sites.new"),
                Delete("bin/profile.sites.old"),
                Generated("bin/tomcat", 0o700, tomcat_script(topology)),
            ]
        )
        return tuple(plan)

    plan = common_plan(descriptor, PRIVATE_CONF_MODE, jdk_target)
    plan.append(Generated("bin/tomcat", 0o700, tomcat_script(topology)))
    if not is_upgrade:
        plan.extend(
            [
                Mkdir("webapps", 0o775),
                Mkdir("webapps/ROOT", 0o775),
                Mkdir("webapps/ROOT/WEB-INF", 0o770),
                Mkdir("webapps/ROOT/WEB-INF/classes", 0o770),
                Mkdir("webapps/ROOT/WEB-INF/lib", 0o770),
                Copy("webapps/ROOT/WEB-INF/web.xml", 0o660),
            ]
        )
    return tuple(plan)


__all__ = [
    "KILL_DELAY_ATTEMPTS",
    "KILL_DELAY_INTERVAL",
    "build_plan",
    "common_plan",
    "jdk_link_target",
    "rendered",
    "tomcat_script",
]
