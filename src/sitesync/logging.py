"""Structured operation logging for sitesync.

Every CLI operation appends one JSON record to ``operations.jsonl`` under the
configured log directory and a one-line summary to ``sitesync.log``. Logging
never interrupts an operation: when the directory cannot be created or a write
fails, the logger disables itself and carries on silently.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "sitesync.log"


def _sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value*; unknown types become strings."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass
class OperationScope:
    """Collects the outcome of a single logged operation."""

    logger: StructuredLogger
    operation_id: str
    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    started: float = field(default_factory=time.monotonic)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    lock_wait_ms: int | None = None

    def add_step(self, name: str, *, status: str = "info", detail: object | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self._set_result("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failure; *errors* defaults to ``[message]``."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
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
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings or ()],
            "errors": [str(item) for item in errors or ()],
            "backups": [str(item) for item in backups or ()],
        }
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self.result = result


class StructuredLogger:
    """Append-only JSONL logger for operations."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG
        self._human_log_path = self._log_dir / HUMAN_LOG
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Disabling structured logging; cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit.

        An exception escaping the block is recorded as an error unless the
        scope already carries a result, and is then re-raised.
        """
        scope = OperationScope(
            logger=self,
            operation_id=uuid.uuid4().hex,
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc))
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        duration_ms = int((time.monotonic() - scope.started) * 1000)
        record: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "op_id": scope.operation_id,
            "command": scope.command,
            "args": _sanitize(scope.args),
            "target": _sanitize(scope.target),
            "actor": {"pid": os.getpid(), "uid": os.getuid()},
            "steps": scope.steps,
            "result": scope.result,
            "duration_ms": duration_ms,
        }
        if scope.lock_wait_ms is not None:
            record["lock_wait_ms"] = scope.lock_wait_ms
        result = scope.result or {}
        summary = (
            f"{record['ts']} {scope.command} status={result.get('status')} "
            f"changed={result.get('changed', 0)} {result.get('message', '')}"
        )
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(summary.rstrip() + "\n")
        except OSError as exc:
            LOGGER.debug("Disabling structured logging after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
