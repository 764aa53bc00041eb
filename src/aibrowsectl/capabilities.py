"""Host capability detection for provisioning runs.

Capabilities are detected once per run before anything on the host is touched.
Required capabilities that are missing abort the run with
:class:`~aibrowsectl.errors.MissingDependency`; the firewall is optional.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .config import BinariesConfig
from .errors import InsufficientPrivileges, MissingDependency

log = logging.getLogger(__name__)

WhichFn = Callable[[str], "str | None"]
RunnerFn = Callable[..., subprocess.CompletedProcess[str]]


class Capability(str, Enum):
    """External facilities a provisioning run may rely on."""

    CONTAINER_RUNTIME = "container_runtime"
    COMPOSE = "compose"
    SOCKET_LISTING = "socket_listing"
    SECURE_RANDOM = "secure_random"
    FIREWALL = "firewall"


REQUIRED_CAPABILITIES: tuple[Capability, ...] = (
    Capability.CONTAINER_RUNTIME,
    Capability.COMPOSE,
    Capability.SOCKET_LISTING,
    Capability.SECURE_RANDOM,
)

_DESCRIPTIONS = {
    Capability.CONTAINER_RUNTIME: "docker is required",
    Capability.COMPOSE: "docker compose plugin or docker-compose is required",
    Capability.SOCKET_LISTING: "ss (iproute2) is required",
    Capability.SECURE_RANDOM: "a secure random source is required",
    Capability.FIREWALL: "firewall-cmd is not installed",
}


@dataclass(slots=True)
class CapabilitySet:
    """Detected capabilities plus the compose command to use."""

    available: frozenset[Capability] = frozenset()
    compose_cmd: tuple[str, ...] = ()
    details: dict[Capability, str] = field(default_factory=dict)

    def has(self, capability: Capability) -> bool:
        """Return ``True`` when *capability* was detected."""
        return capability in self.available

    def require(self, capabilities: Sequence[Capability] = REQUIRED_CAPABILITIES) -> None:
        """Raise :class:`MissingDependency` for the first absent capability."""
        for capability in capabilities:
            if capability not in self.available:
                detail = self.details.get(capability) or _DESCRIPTIONS[capability]
                raise MissingDependency(capability.value, detail)


def detect_capabilities(
    binaries: BinariesConfig,
    *,
    which: WhichFn = shutil.which,
    runner: RunnerFn = subprocess.run,
) -> CapabilitySet:
    """Probe the host for the tools named in *binaries*."""
    available: set[Capability] = set()
    details: dict[Capability, str] = {}

    if which(binaries.docker):
        available.add(Capability.CONTAINER_RUNTIME)
    else:
        details[Capability.CONTAINER_RUNTIME] = f"{binaries.docker} is required"

    compose_cmd = _detect_compose(binaries, which=which, runner=runner)
    if compose_cmd:
        available.add(Capability.COMPOSE)

    if which(binaries.ss):
        available.add(Capability.SOCKET_LISTING)
    else:
        details[Capability.SOCKET_LISTING] = f"{binaries.ss} (iproute2) is required"

    if _secure_random_available():
        available.add(Capability.SECURE_RANDOM)

    if which(binaries.firewall_cmd):
        available.add(Capability.FIREWALL)

    log.debug("Detected capabilities: %s", ", ".join(sorted(c.value for c in available)))
    return CapabilitySet(frozenset(available), compose_cmd, details)


def require_root(enabled: bool, *, geteuid: Callable[[], int] = os.geteuid) -> None:
    """Raise :class:`InsufficientPrivileges` when root is required but absent."""
    if enabled and geteuid() != 0:
        raise InsufficientPrivileges("This command must be run as root.")


def _detect_compose(
    binaries: BinariesConfig,
    *,
    which: WhichFn,
    runner: RunnerFn,
) -> tuple[str, ...]:
    if which(binaries.docker):
        try:
            result = runner(  # noqa: S603
                [binaries.docker, "compose", "version"],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError:
            result = None
        if result is not None and result.returncode == 0:
            return (binaries.docker, "compose")
    if which(binaries.docker_compose):
        return (binaries.docker_compose,)
    return ()


def _secure_random_available() -> bool:
    try:
        os.urandom(1)
    except NotImplementedError:
        return False
    return True


__all__ = [
    "Capability",
    "CapabilitySet",
    "REQUIRED_CAPABILITIES",
    "detect_capabilities",
    "require_root",
]
