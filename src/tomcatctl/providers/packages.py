"""Package manager queries for the shared Tomcat template installations."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from typing import Protocol


class PackageError(RuntimeError):
    """Raised when the installed version of a package cannot be determined."""


class PackageManager(Protocol):
    """Read-only view of the host package database."""

    def installed_version(self, package: str) -> str:
        """Return ``<version>-<release>`` for the installed *package*."""
        ...


class RpmPackageManager:
    """Query installed packages through ``rpm``."""

    QUERY_FORMAT = "%{VERSION}-%{RELEASE}"

    def __init__(self, *, rpm_bin: str = "rpm") -> None:
        """Initialise the manager with the ``rpm`` executable to call."""
        self.rpm_bin = rpm_bin
        self._cache: dict[str, str] = {}

    def installed_version(self, package: str) -> str:
        """Return the installed ``version-release`` of *package*; cached per manager."""
        cached = self._cache.get(package)
        if cached is not None:
            return cached
        result = self._run_command(
            [self.rpm_bin, "-q", "--qf", self.QUERY_FORMAT, package],
            error_prefix=f"{self.rpm_bin} -q {package}",
        )
        value = result.stdout.strip()
        if not value or "not installed" in value:
            raise PackageError(f"Package {package} is not installed")
        self._cache[package] = value
        return value

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise PackageError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            stdout = (result.stdout or "").strip()
            message = stderr or stdout or f"exit code {result.returncode}"
            raise PackageError(f"{error_prefix} failed: {message}")
        return result


__all__ = ["PackageError", "PackageManager", "RpmPackageManager"]
