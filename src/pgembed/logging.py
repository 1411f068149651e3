"""Structured operation logging for pgembed.

Every lifecycle operation (setup, start, stop, destroy, cache fetches driven
from the CLI) can be recorded as a single JSON line in ``operations.jsonl``
under the configured log directory. Records capture the operation name, the
sanitised arguments, the target, the steps taken and the final result.

The logger never raises on I/O problems: when the directory cannot be created
or a write fails it disables itself and subsequent operations become no-ops
(debug lines still reach the standard :mod:`logging` hierarchy).
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"
SECRET_KEYS = {"password", "token", "github_token", "secret"}
REDACTED = "********"


class OperationScope:
    """Collect steps and the outcome for one operation."""

    def __init__(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an open scope for operation *name*."""
        self.name = name
        self.op_id = uuid.uuid4().hex
        self.args = _sanitise(args or {})
        self.target = _sanitise(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None
        self.started_at = datetime.now(UTC)
        self._started_monotonic = time.monotonic()

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _json_safe(detail)
        self.steps.append(step)
        LOGGER.debug("%s: step %s (%s)", self.name, name, status)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for a lock."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._finish("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings),
            errors=list(errors),
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
        """Mark the operation failed."""
        self._finish(
            "error",
            message,
            errors=list(errors or [message]),
            rc=rc,
            context=context,
        )

    @property
    def duration_ms(self) -> int:
        """Return the elapsed time since the scope opened."""
        return int((time.monotonic() - self._started_monotonic) * 1000)

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        return {
            "ts": self.started_at.isoformat(),
            "op_id": self.op_id,
            "operation": self.name,
            "args": self.args,
            "target": self.target,
            "steps": self.steps,
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": self.duration_ms,
            "result": self.result or {"status": "unknown"},
        }

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message, "changed": changed}
        if warnings:
            result["warnings"] = warnings
        if errors:
            result["errors"] = errors
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitise(context)
        self.result = result


class StructuredLogger:
    """Append operation records to ``operations.jsonl``."""

    def __init__(self, log_dir: Path | None) -> None:
        """Prepare the log directory; disable logging if it is unusable."""
        self._enabled = log_dir is not None
        self._operations_log_path = (log_dir or Path(os.devnull)) / OPERATIONS_LOG_NAME
        if log_dir is None:
            return
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation log disabled, cannot create %s: %s", log_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return whether records are being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open an operation scope and persist it on exit.

        Exceptions escaping the block are recorded as errors and re-raised.
        """
        scope = OperationScope(name, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__, context=getattr(exc, "context", None))
            raise
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(scope.to_record(), sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.warning("Operation log disabled after write failure: %s", exc)
            self._enabled = False


def _sanitise(values: Mapping[str, object]) -> dict[str, object]:
    sanitised: dict[str, object] = {}
    for key, value in values.items():
        if str(key).lower() in SECRET_KEYS and value is not None:
            sanitised[str(key)] = REDACTED
        else:
            sanitised[str(key)] = _json_safe(value)
    return sanitised


def _json_safe(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return _sanitise(value)
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


__all__ = ["OperationScope", "StructuredLogger"]
