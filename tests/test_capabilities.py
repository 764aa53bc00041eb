"""Tests for host capability detection."""
from __future__ import annotations

import subprocess

import pytest

from aibrowsectl.capabilities import (
    Capability,
    CapabilitySet,
    detect_capabilities,
    require_root,
)
from aibrowsectl.config import BinariesConfig
from aibrowsectl.errors import InsufficientPrivileges, MissingDependency


def _which(available: set[str]):
    return lambda name: f"/usr/bin/{name}" if name in available else None


def _runner(returncode: int):
    def run(args: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(args, returncode, "", "")

    return run


def test_detects_compose_plugin() -> None:
    """``docker compose`` is preferred when the plugin answers."""
    caps = detect_capabilities(
        BinariesConfig(),
        which=_which({"docker", "ss", "firewall-cmd", "docker-compose"}),
        runner=_runner(0),
    )

    assert caps.compose_cmd == ("docker", "compose")
    assert caps.has(Capability.FIREWALL)
    caps.require()


def test_falls_back_to_legacy_compose() -> None:
    """The standalone binary is used when the plugin is unavailable."""
    caps = detect_capabilities(
        BinariesConfig(),
        which=_which({"docker", "ss", "docker-compose"}),
        runner=_runner(1),
    )

    assert caps.compose_cmd == ("docker-compose",)
    assert not caps.has(Capability.FIREWALL)
    caps.require()


@pytest.mark.parametrize(
    ("available", "capability"),
    [
        ({"ss", "docker-compose"}, "container_runtime"),
        ({"docker", "ss"}, "compose"),
        ({"docker", "docker-compose"}, "socket_listing"),
    ],
)
def test_missing_required_capability(available: set[str], capability: str) -> None:
    """Missing required tools raise ``MissingDependency`` naming the capability."""
    caps = detect_capabilities(BinariesConfig(), which=_which(available), runner=_runner(1))

    with pytest.raises(MissingDependency, match="Missing dependency") as excinfo:
        caps.require()

    assert excinfo.value.capability == capability
    assert excinfo.value.kind == "missing-dependency"


def test_firewall_is_optional() -> None:
    """An absent firewall never fails the required check."""
    caps = CapabilitySet(
        frozenset(
            {
                Capability.CONTAINER_RUNTIME,
                Capability.COMPOSE,
                Capability.SOCKET_LISTING,
                Capability.SECURE_RANDOM,
            }
        ),
        ("docker", "compose"),
    )

    caps.require()


def test_require_root() -> None:
    """Root is enforced only when configured."""
    require_root(True, geteuid=lambda: 0)
    require_root(False, geteuid=lambda: 1000)

    with pytest.raises(InsufficientPrivileges, match="must be run as root"):
        require_root(True, geteuid=lambda: 1000)
