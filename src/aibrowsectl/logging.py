"""Structured operation logging for aibrowsectl.

Each provisioning run is wrapped in an *operation*. Operations record the
command, its arguments, the target instance, the ordered list of steps that
were executed, and a final result. When the operation closes a single JSON
record is appended to ``operations.jsonl`` and a one-line summary to
``aibrowsectl.log`` in the configured logs directory.

File logging is strictly best effort: when the directory cannot be created or
a write fails the logger disables itself and provisioning carries on.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from . import __version__

LOGGER_NAME = "aibrowsectl"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

_log = logging.getLogger(__name__)


def configure_console_logging(stream: object | None = None, *, level: int = logging.INFO) -> None:
    """Route the ``aibrowsectl`` logger to stderr as ``LEVEL: message`` lines."""
    root = logging.getLogger(LOGGER_NAME)
    for handler in list(root.handlers):
        if getattr(handler, "_aibrowsectl_console", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(stream)  # type: ignore[arg-type]
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handler._aibrowsectl_console = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False


def _json_safe(value: object) -> object:
    """Return *value* converted into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


@dataclass
class OperationScope:
    """Mutable record of a running operation."""

    command: str
    args: dict[str, object]
    target: dict[str, object]
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    _started: float = field(default_factory=time.monotonic, repr=False)

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Append a named step outcome to the operation."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish("success", message, changed=changed, warnings=warnings, context=context)

    def warning(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings),
            "errors": list(errors),
            "context": _json_safe(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing this operation."""
        result = self.result or {
            "status": "error",
            "message": "Operation ended without a result.",
            "errors": ["unfinished"],
        }
        return {
            "id": self.operation_id,
            "timestamp": self.started_at.isoformat(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "command": self.command,
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "steps": _json_safe(self.steps),
            "result": result,
            "context": {"aibrowsectl_version": __version__},
        }


class StructuredLogger:
    """Persist operation records under *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling file output when unavailable."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / "operations.jsonl"
        self._human_log_path = self.logs_dir / "aibrowsectl.log"
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _log.debug("File logging disabled; cannot create %s: %s", self.logs_dir, exc)
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command=command, args=dict(args or {}), target=dict(target or {}))
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled {type(exc).__name__}: {exc}")
            raise
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        result = record["result"]
        status = result.get("status", "unknown") if isinstance(result, dict) else "unknown"
        message = result.get("message", "") if isinstance(result, dict) else ""
        human = f"{record['timestamp']} {scope.command} {status}: {message}\n"
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(human)
        except OSError as exc:
            _log.debug("File logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = [
    "CONSOLE_FORMAT",
    "LOGGER_NAME",
    "OperationScope",
    "StructuredLogger",
    "configure_console_logging",
]
