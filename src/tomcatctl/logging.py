"""Structured operation logging for tomcatctl.

Every CLI command records exactly one JSON line in ``operations.jsonl`` under
the configured logs directory. A record captures the command arguments, the
target, the individual steps performed and the final outcome. Logging is a
best-effort side channel: when the log directory cannot be created or written
the logger disables itself rather than failing the command.
"""
from __future__ import annotations

import json
import os
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG = "operations.jsonl"


def _sanitize(value: object) -> object:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Collects steps and the final result for one logged operation."""

    name: str
    args: dict[str, object]
    target: dict[str, object]
    started: float = field(default_factory=time.perf_counter)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    lock_wait_ms: int | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Append a step record."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited on locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 0,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            backups=backups,
            context=context,
            rc=rc,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 2,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            errors=errors if errors else [message],
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 0,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
            "context": _sanitize(dict(context or {})),
            "rc": rc,
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this scope."""
        record: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "pid": os.getpid(),
            "operation": self.name,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": list(self.steps),
            "duration_ms": int((time.perf_counter() - self.started) * 1000),
            "result": self.result,
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append JSON operation records to the logs directory."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the logs directory, disabling the logger when unavailable."""
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return whether records are still being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(name=name, args=dict(args or {}), target=dict(target or {}))
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or exc.__class__.__name__, rc=1)
            self._write(scope)
            raise
        except BaseException:
            # KeyboardInterrupt and SystemExit: keep whatever result was recorded.
            if scope.result is None:
                scope.error("Operation interrupted.", rc=1)
            self._write(scope)
            raise
        if scope.result is None:
            scope.success("Operation complete.")
        self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        line = json.dumps(scope.to_record(), sort_keys=True)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
