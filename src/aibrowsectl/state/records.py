"""Per-instance record files.

Each instance directory holds a ``.env`` file of ``KEY=VALUE`` lines. The file
is both the persisted state of the instance (port, credentials, cached
upstream values) and the ``env_file`` handed to the container. Records are
parsed against a fixed schema: unknown keys and malformed lines are rejected
and a file that carries some but not all required keys is treated as
corrupted rather than fresh.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Generic, TypeVar

from ..errors import ProvisionError

RECORD_FILENAME = ".env"
RECORD_MODE = 0o600


class RecordError(ProvisionError):
    """Base class for unusable instance records."""

    kind = "record"


class IncompleteRecord(RecordError):
    """Raised when a record is missing required values."""

    kind = "incomplete-record"


class MalformedRecord(RecordError):
    """Raised when a record contains unknown keys or unparsable values."""

    kind = "malformed-record"


@dataclass(frozen=True)
class BrowserRecord:
    """Persisted state of a browser (primary) instance."""

    REQUIRED: ClassVar[tuple[str, ...]] = ("BROWSERLESS_PORT", "BROWSERLESS_TOKEN")
    OPTIONAL: ClassVar[tuple[str, ...]] = (
        "BROWSERLESS_NAME",
        "BROWSERLESS_BIND_ADDRESS",
        "DOWNLOAD_DIR",
        "LOG_DIR",
    )

    name: str
    port: int
    token: str
    download_dir: Path
    log_dir: Path
    bind_address: str = ""

    @classmethod
    def from_env(cls, values: Mapping[str, str], path: Path) -> BrowserRecord:
        """Build a record from parsed *values* read from *path*."""
        instance_dir = path.parent
        return cls(
            name=values.get("BROWSERLESS_NAME") or instance_dir.name,
            port=_parse_port(values["BROWSERLESS_PORT"], "BROWSERLESS_PORT", path),
            token=values["BROWSERLESS_TOKEN"],
            download_dir=Path(values.get("DOWNLOAD_DIR") or instance_dir / "downloads"),
            log_dir=Path(values.get("LOG_DIR") or instance_dir / "logs"),
            bind_address=values.get("BROWSERLESS_BIND_ADDRESS", ""),
        )

    def to_env(self) -> list[tuple[str, str]]:
        """Return the ordered ``KEY=VALUE`` pairs for this record."""
        return [
            ("BROWSERLESS_NAME", self.name),
            ("BROWSERLESS_TOKEN", self.token),
            ("BROWSERLESS_PORT", str(self.port)),
            ("BROWSERLESS_BIND_ADDRESS", self.bind_address),
            ("DOWNLOAD_DIR", str(self.download_dir)),
            ("LOG_DIR", str(self.log_dir)),
        ]


@dataclass(frozen=True)
class WrapperRecord:
    """Persisted state of a wrapper (dependent) instance.

    The upstream port and token are copied from the browser record when the
    wrapper is provisioned. They are not re-read afterwards, so rotating the
    browser credentials requires re-running the wrapper provisioner.
    """

    REQUIRED: ClassVar[tuple[str, ...]] = ("WRAPPER_PORT", "UPSTREAM_PORT", "UPSTREAM_TOKEN")
    OPTIONAL: ClassVar[tuple[str, ...]] = ("WRAPPER_NAME", "UPSTREAM_ENDPOINT", "LOG_DIR")

    name: str
    port: int
    upstream_port: int
    upstream_token: str
    upstream_endpoint: str
    log_dir: Path

    @classmethod
    def from_env(cls, values: Mapping[str, str], path: Path) -> WrapperRecord:
        """Build a record from parsed *values* read from *path*."""
        instance_dir = path.parent
        upstream_port = _parse_port(values["UPSTREAM_PORT"], "UPSTREAM_PORT", path)
        return cls(
            name=values.get("WRAPPER_NAME") or instance_dir.name,
            port=_parse_port(values["WRAPPER_PORT"], "WRAPPER_PORT", path),
            upstream_port=upstream_port,
            upstream_token=values["UPSTREAM_TOKEN"],
            upstream_endpoint=values.get("UPSTREAM_ENDPOINT")
            or f"http://localhost:{upstream_port}",
            log_dir=Path(values.get("LOG_DIR") or instance_dir / "logs"),
        )

    def to_env(self) -> list[tuple[str, str]]:
        """Return the ordered ``KEY=VALUE`` pairs for this record."""
        return [
            ("WRAPPER_NAME", self.name),
            ("WRAPPER_PORT", str(self.port)),
            ("UPSTREAM_PORT", str(self.upstream_port)),
            ("UPSTREAM_TOKEN", self.upstream_token),
            ("UPSTREAM_ENDPOINT", self.upstream_endpoint),
            ("LOG_DIR", str(self.log_dir)),
        ]


RecordT = TypeVar("RecordT", BrowserRecord, WrapperRecord)


@dataclass(frozen=True)
class RecordStore(Generic[RecordT]):
    """Load and save one record type in instance directories."""

    record_type: type[RecordT]
    filename: str = RECORD_FILENAME

    def path_for(self, instance_dir: Path) -> Path:
        """Return the record path inside *instance_dir*."""
        return instance_dir / self.filename

    def load(self, instance_dir: Path) -> RecordT | None:
        """Return the record stored in *instance_dir*, or ``None`` when absent."""
        path = self.path_for(instance_dir)
        if not path.exists():
            return None
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedRecord(f"{path} is not valid UTF-8: {exc}.") from exc
        values = parse_env(text, path)

        allowed = set(self.record_type.REQUIRED) | set(self.record_type.OPTIONAL)
        unknown = sorted(set(values) - allowed)
        if unknown:
            raise MalformedRecord(f"{path} contains unknown keys: {', '.join(unknown)}.")

        missing = [key for key in self.record_type.REQUIRED if not values.get(key)]
        if missing:
            raise IncompleteRecord(
                f"{path} is missing required values: {', '.join(missing)}. "
                "Fix the file by hand or remove the instance directory."
            )
        return self.record_type.from_env(values, path)

    def save(self, instance_dir: Path, record: RecordT) -> Path:
        """Atomically persist *record* with owner-only permissions."""
        path = self.path_for(instance_dir)
        content = "".join(f"{key}={value}\n" for key, value in record.to_env())
        path.parent.mkdir(parents=True, exist_ok=True)

        # mkstemp creates the file 0600 before any content is written.
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            os.fchmod(tmp_fd, RECORD_MODE)
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)
        return path


def parse_env(text: str, path: Path) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines, ignoring blanks and ``#`` comments."""
    values: dict[str, str] = {}
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            raise MalformedRecord(f"{path}:{lineno}: expected KEY=VALUE, got {raw_line!r}.")
        if key in values:
            raise MalformedRecord(f"{path}:{lineno}: duplicate key {key}.")
        values[key] = value.strip()
    return values


def _parse_port(value: str, key: str, path: Path) -> int:
    try:
        port = int(value)
    except ValueError as exc:
        raise MalformedRecord(f"{path}: {key} must be an integer, got {value!r}.") from exc
    if not 1 <= port <= 65535:
        raise MalformedRecord(f"{path}: {key} {port} is outside 1-65535.")
    return port


__all__ = [
    "BrowserRecord",
    "IncompleteRecord",
    "MalformedRecord",
    "RecordError",
    "RecordStore",
    "WrapperRecord",
    "parse_env",
]
