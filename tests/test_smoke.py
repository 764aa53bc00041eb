"""Tests for the screenshot smoke test."""
from __future__ import annotations

import http.client
import logging
import urllib.error
from pathlib import Path

import pytest

from aibrowsectl.smoke import SmokeTestError, capture_screenshot, screenshot_url

TOKEN = "f" * 48


def test_screenshot_url_encodes_target() -> None:
    """The target URL is passed as an encoded query parameter."""
    url = screenshot_url(20001, TOKEN, "https://example.org")

    assert url == (
        f"http://localhost:20001/screenshot?token={TOKEN}&url=https%3A%2F%2Fexample.org"
    )


def test_capture_retries_then_saves(tmp_path: Path) -> None:
    """Transient failures are retried with a delay between attempts."""
    attempts: list[str] = []
    sleeps: list[float] = []

    def fetch(url: str, timeout: float) -> bytes:
        attempts.append(url)
        if len(attempts) < 3:
            raise urllib.error.URLError("connection refused")
        return b"x" * 20000

    destination = tmp_path / "downloads" / "smoke-test.png"
    result = capture_screenshot(
        destination,
        port=20001,
        token=TOKEN,
        target="https://example.org",
        fetch=fetch,
        sleep=sleeps.append,
    )

    assert result.attempts == 3
    assert result.size == 20000
    assert result.undersized is False
    assert destination.read_bytes() == b"x" * 20000
    assert sleeps == [2.0, 2.0]


def test_undersized_capture_warns(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    """A suspiciously small screenshot is kept but flagged."""
    destination = tmp_path / "smoke-test.png"

    with caplog.at_level(logging.WARNING):
        result = capture_screenshot(
            destination,
            port=20001,
            token=TOKEN,
            target="https://example.org",
            fetch=lambda url, timeout: b"tiny",
            sleep=lambda _: None,
        )

    assert result.undersized is True
    assert destination.read_bytes() == b"tiny"
    assert "only 4 bytes" in caplog.text


def test_capture_gives_up_after_retries(tmp_path: Path) -> None:
    """Exhausting the retries raises ``SmokeTestError``."""
    calls: list[str] = []

    def fetch(url: str, timeout: float) -> bytes:
        calls.append(url)
        raise OSError("HTTP 500")

    with pytest.raises(SmokeTestError, match="after 6 attempts") as excinfo:
        capture_screenshot(
            tmp_path / "smoke-test.png",
            port=20001,
            token=TOKEN,
            target="https://example.org",
            fetch=fetch,
            sleep=lambda _: None,
        )

    assert excinfo.value.kind == "smoke-test"
    assert len(calls) == 6
    assert not (tmp_path / "smoke-test.png").exists()


def test_protocol_errors_are_retried(tmp_path: Path) -> None:
    """A garbled HTTP response is retried like a refused connection."""
    calls: list[str] = []

    def fetch(url: str, timeout: float) -> bytes:
        calls.append(url)
        if len(calls) == 1:
            raise http.client.BadStatusLine("GARBAGE")
        return b"x" * 20000

    result = capture_screenshot(
        tmp_path / "smoke-test.png",
        port=20001,
        token=TOKEN,
        target="https://example.org",
        fetch=fetch,
        sleep=lambda _: None,
    )

    assert result.attempts == 2


def test_zero_retries_makes_single_attempt(tmp_path: Path) -> None:
    """``retries`` counts additional attempts after the first one."""
    calls: list[str] = []
    sleeps: list[float] = []

    def fetch(url: str, timeout: float) -> bytes:
        calls.append(url)
        raise urllib.error.URLError("connection refused")

    with pytest.raises(SmokeTestError, match="after 1 attempts"):
        capture_screenshot(
            tmp_path / "smoke-test.png",
            port=20001,
            token=TOKEN,
            target="https://example.org",
            retries=0,
            fetch=fetch,
            sleep=sleeps.append,
        )

    assert len(calls) == 1
    assert sleeps == []
