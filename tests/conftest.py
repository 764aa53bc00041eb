"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import logging
import os
import random
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from aibrowsectl.capabilities import Capability, CapabilitySet
from aibrowsectl.config import AppConfig, load_config
from aibrowsectl.logging import LOGGER_NAME, StructuredLogger
from aibrowsectl.orchestrator import BrowserProvisioner, WrapperProvisioner
from aibrowsectl.ports import PortAllocator
from aibrowsectl.providers.compose import StackError
from aibrowsectl.providers.firewalld import FirewallOutcome
from aibrowsectl.state.clients import ClientRegistry
from aibrowsectl.templates import TemplateEngine

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 20000


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture(autouse=True)
def _reset_console_logging() -> Iterator[None]:
    """Detach console handlers installed by CLI runs between tests."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_aibrowsectl_console", False):
            logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@dataclass
class FakePortProbe:
    """In-memory port probe treating ``busy`` ports as taken."""

    busy: set[int] = field(default_factory=set)
    probed: list[int] = field(default_factory=list)
    reserved: list[int] = field(default_factory=list)

    def probe(self, port: int) -> bool:
        self.probed.append(port)
        return port not in self.busy and port not in self.reserved

    def reserve(self, port: int) -> None:
        self.reserved.append(port)

    def release(self, port: int) -> None:
        if port in self.reserved:
            self.reserved.remove(port)


@dataclass
class FakeCompose:
    """Record compose bring-ups instead of invoking docker."""

    compose_cmd: tuple[str, ...] = ("docker", "compose")
    calls: list[tuple[Path, str, bool]] = field(default_factory=list)
    fail_with: str | None = None

    def bring_up(self, instance_dir: Path, project: str, *, build: bool = False) -> None:
        if self.fail_with:
            raise StackError(self.fail_with)
        self.calls.append((instance_dir, project, build))


@dataclass
class FakeFirewall:
    """Record firewall calls and return a canned outcome."""

    outcome: FirewallOutcome = FirewallOutcome.OPENED
    opened: list[tuple[int, str, str]] = field(default_factory=list)

    def open_port(self, port: int, zone: str = "trusted", protocol: str = "tcp") -> FirewallOutcome:
        self.opened.append((port, zone, protocol))
        return self.outcome


def full_capabilities(_binaries: object) -> CapabilitySet:
    """Return a capability set with every capability available."""
    return CapabilitySet(frozenset(Capability), ("docker", "compose"))


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted entirely inside the temporary directory."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "logs_dir": str(tmp_path / "logs"),
            "templates_dir": str(tmp_path / "templates"),
            "client_registry": str(tmp_path / "home" / "mcp.json"),
            "require_root": False,
            "browser": {"root": str(tmp_path / "aibrowse")},
            "wrapper": {"root": str(tmp_path / "browsewrap")},
            "health": {"interval": 0},
        },
    )


@dataclass
class ProvisionHarness:
    """Bundle of fakes wired into provisioners for orchestrator tests."""

    config: AppConfig
    probe: FakePortProbe
    compose: FakeCompose
    firewall: FakeFirewall
    healthy: list[bool]
    fetch_calls: list[str]
    screenshot: bytes = PNG_BYTES
    sleeps: list[float] = field(default_factory=list)

    def _common(self) -> dict[str, object]:
        return {
            "logger": StructuredLogger(self.config.logs_dir),
            "engine": TemplateEngine.with_overrides(self.config.templates_dir),
            "allocator": PortAllocator(self.probe, rng=random.Random(7)),
            "compose": self.compose,
            "firewall": self.firewall,
            "detect": full_capabilities,
            "geteuid": lambda: 0,
            "probe_factory": lambda record: self._health_probe,
            "sleep": self.sleeps.append,
        }

    def _health_probe(self) -> bool:
        return self.healthy.pop(0) if self.healthy else True

    def _fetch(self, url: str, timeout: float) -> bytes:
        self.fetch_calls.append(url)
        return self.screenshot

    def browser(self, **overrides: object) -> BrowserProvisioner:
        kwargs = {**self._common(), "fetch": self._fetch, **overrides}
        return BrowserProvisioner(self.config, **kwargs)  # type: ignore[arg-type]

    def wrapper(self, **overrides: object) -> WrapperProvisioner:
        kwargs = {
            **self._common(),
            "registry": ClientRegistry(self.config.client_registry),
            **overrides,
        }
        return WrapperProvisioner(self.config, **kwargs)  # type: ignore[arg-type]


@pytest.fixture
def harness(app_config: AppConfig) -> ProvisionHarness:
    """Provisioner factory backed by in-memory fakes."""
    return ProvisionHarness(
        config=app_config,
        probe=FakePortProbe(),
        compose=FakeCompose(),
        firewall=FakeFirewall(),
        healthy=[],
        fetch_calls=[],
    )


@pytest.fixture
def write_binary(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write an executable shell stub into ``tmp_path/bin``."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _write(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
        path.chmod(0o755)
        return path

    return _write
