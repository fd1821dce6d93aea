"""Provider interfaces for tomcatctl."""
from __future__ import annotations

from .packages import PackageError, PackageManager, RpmPackageManager
from .process import ProcessError, ProcessRunner

__all__ = [
    "PackageError",
    "PackageManager",
    "ProcessError",
    "ProcessRunner",
    "RpmPackageManager",
]
