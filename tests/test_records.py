"""Tests for per-instance record files."""
from __future__ import annotations

from pathlib import Path

import pytest

from aibrowsectl.state.records import (
    BrowserRecord,
    IncompleteRecord,
    MalformedRecord,
    RecordStore,
    WrapperRecord,
    parse_env,
)

TOKEN = "a" * 48


def _browser_record(instance_dir: Path, port: int = 20001) -> BrowserRecord:
    return BrowserRecord(
        name=instance_dir.name,
        port=port,
        token=TOKEN,
        download_dir=instance_dir / "downloads",
        log_dir=instance_dir / "logs",
    )


def test_load_returns_none_when_absent(tmp_path: Path) -> None:
    """A missing record means a fresh instance."""
    store = RecordStore(BrowserRecord)

    assert store.load(tmp_path / "demo") is None


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    """Saved records are owner-only and load back unchanged."""
    instance_dir = tmp_path / "demo"
    store = RecordStore(BrowserRecord)
    record = _browser_record(instance_dir)

    path = store.save(instance_dir, record)

    assert path == instance_dir / ".env"
    assert path.stat().st_mode & 0o777 == 0o600
    text = path.read_text(encoding="utf-8")
    assert text.splitlines() == [
        "BROWSERLESS_NAME=demo",
        f"BROWSERLESS_TOKEN={TOKEN}",
        "BROWSERLESS_PORT=20001",
        "BROWSERLESS_BIND_ADDRESS=",
        f"DOWNLOAD_DIR={instance_dir / 'downloads'}",
        f"LOG_DIR={instance_dir / 'logs'}",
    ]
    assert store.load(instance_dir) == record
    assert list(instance_dir.glob(".env.*")) == []


def test_minimal_record_uses_directory_defaults(tmp_path: Path) -> None:
    """Optional keys fall back to paths inside the instance directory."""
    instance_dir = tmp_path / "demo"
    instance_dir.mkdir()
    (instance_dir / ".env").write_text(f"BROWSERLESS_PORT=20005\nBROWSERLESS_TOKEN={TOKEN}\n")

    record = RecordStore(BrowserRecord).load(instance_dir)

    assert record is not None
    assert record.name == "demo"
    assert record.port == 20005
    assert record.download_dir == instance_dir / "downloads"


@pytest.mark.parametrize(
    "content",
    [
        "BROWSERLESS_PORT=20001\n",
        f"BROWSERLESS_TOKEN={TOKEN}\n",
        f"BROWSERLESS_PORT=\nBROWSERLESS_TOKEN={TOKEN}\n",
    ],
)
def test_partial_record_is_incomplete(tmp_path: Path, content: str) -> None:
    """A record with some but not all required values is corrupted."""
    instance_dir = tmp_path / "demo"
    instance_dir.mkdir()
    (instance_dir / ".env").write_text(content)

    with pytest.raises(IncompleteRecord) as excinfo:
        RecordStore(BrowserRecord).load(instance_dir)

    assert excinfo.value.kind == "incomplete-record"


@pytest.mark.parametrize(
    ("content", "message"),
    [
        (f"BROWSERLESS_PORT=20001\nBROWSERLESS_TOKEN={TOKEN}\nEXTRA=1\n", "unknown keys"),
        (f"BROWSERLESS_PORT=abc\nBROWSERLESS_TOKEN={TOKEN}\n", "must be an integer"),
        (f"BROWSERLESS_PORT=70000\nBROWSERLESS_TOKEN={TOKEN}\n", "outside 1-65535"),
        ("not a pair\n", "expected KEY=VALUE"),
        ("BROWSERLESS_PORT=1\nBROWSERLESS_PORT=2\n", "duplicate key"),
    ],
)
def test_malformed_record(tmp_path: Path, content: str, message: str) -> None:
    """Unknown keys and unparsable values are rejected."""
    instance_dir = tmp_path / "demo"
    instance_dir.mkdir()
    (instance_dir / ".env").write_text(content)

    with pytest.raises(MalformedRecord, match=message):
        RecordStore(BrowserRecord).load(instance_dir)


def test_wrapper_record_round_trip(tmp_path: Path) -> None:
    """Wrapper records cache the upstream port and token."""
    instance_dir = tmp_path / "demo"
    store = RecordStore(WrapperRecord)
    record = WrapperRecord(
        name="demo",
        port=41001,
        upstream_port=20001,
        upstream_token=TOKEN,
        upstream_endpoint="http://host.docker.internal:20001",
        log_dir=instance_dir / "logs",
    )

    store.save(instance_dir, record)

    assert store.load(instance_dir) == record


def test_wrapper_record_requires_upstream_values(tmp_path: Path) -> None:
    """A wrapper record without cached upstream values is incomplete."""
    instance_dir = tmp_path / "demo"
    instance_dir.mkdir()
    (instance_dir / ".env").write_text("WRAPPER_PORT=41001\n")

    with pytest.raises(IncompleteRecord, match="UPSTREAM_PORT, UPSTREAM_TOKEN"):
        RecordStore(WrapperRecord).load(instance_dir)


def test_parse_env_skips_comments_and_blanks(tmp_path: Path) -> None:
    """Comments and blank lines are ignored; values keep embedded '='."""
    values = parse_env("# header\n\nA=1\nB=x=y\n", tmp_path / ".env")

    assert values == {"A": "1", "B": "x=y"}


def test_undecodable_record_is_malformed(tmp_path: Path) -> None:
    """Bytes that are not UTF-8 are reported as a malformed record."""
    (tmp_path / ".env").write_bytes(b"BROWSERLESS_PORT=20001\nBROWSERLESS_TOKEN=\xff\xfe\n")

    with pytest.raises(MalformedRecord, match="not valid UTF-8") as excinfo:
        RecordStore(BrowserRecord).load(tmp_path)

    assert excinfo.value.kind == "malformed-record"
