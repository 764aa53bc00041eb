"""Host port allocation for aibrowsectl instances.

Ports are chosen by sampling the configured range at random and asking a
:class:`PortProbe` whether the candidate is free. Random sampling keeps
concurrent provisioners that share a range from colliding on the same low
ports the way a sequential scan would.

The probe is a check, not a lock: another process may bind the port between
allocation and ``docker compose up``. That window is accepted; the container
runtime refuses the bind and the run fails loudly instead of corrupting state.
"""
from __future__ import annotations

import logging
import random
import subprocess
from dataclasses import dataclass, field
from typing import Protocol

from .errors import MissingDependency, ProvisionError

log = logging.getLogger(__name__)


class NoFreePort(ProvisionError):
    """Raised when no free port was found within the attempt budget."""

    kind = "no-free-port"


class PortProbe(Protocol):
    """Resource-allocation interface consulted by :class:`PortAllocator`."""

    def probe(self, port: int) -> bool:
        """Return ``True`` when *port* is free to use."""

    def reserve(self, port: int) -> None:
        """Record that *port* has been handed out."""

    def release(self, port: int) -> None:
        """Forget a reservation made with :meth:`reserve`."""


@dataclass(slots=True)
class HostPortProbe:
    """Probe local listening sockets (``ss``) and published container ports."""

    ss_bin: str = "ss"
    docker_bin: str = "docker"
    _reserved: set[int] = field(default_factory=set)

    def probe(self, port: int) -> bool:
        """Return ``True`` when neither a socket nor a container holds *port*."""
        if port in self._reserved:
            return False
        if self._socket_bound(port):
            log.debug("Port %s rejected: local socket bound.", port)
            return False
        if self._container_published(port):
            log.debug("Port %s rejected: published by a running container.", port)
            return False
        return True

    def reserve(self, port: int) -> None:
        """Remember *port* so this process never hands it out twice."""
        self._reserved.add(port)

    def release(self, port: int) -> None:
        """Drop the in-process reservation for *port*."""
        self._reserved.discard(port)

    # ------------------------------------------------------------------
    def _socket_bound(self, port: int) -> bool:
        result = self._run([self.ss_bin, "-Htan", f"( sport = :{port} )"])
        return bool(result.stdout.strip())

    def _container_published(self, port: int) -> bool:
        result = self._run([self.docker_bin, "ps", "--format", "{{.Ports}}"])
        needle = f":{port}->"
        return any(needle in line for line in result.stdout.splitlines())

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                args,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise MissingDependency(args[0], f"{args[0]} ({exc})") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ProvisionError(
                f"{' '.join(args[:2])} failed (exit {result.returncode}): {message}"
            )
        return result


@dataclass(slots=True)
class PortAllocator:
    """Pick random free ports from an inclusive range."""

    probe: PortProbe
    rng: random.Random = field(default_factory=random.SystemRandom)

    def allocate(self, range_min: int, range_max: int, max_attempts: int = 25) -> int:
        """Return a free port in ``[range_min, range_max]``.

        Raises :class:`NoFreePort` after exactly *max_attempts* rejected
        candidates.
        """
        if not 1 <= range_min <= range_max <= 65535:
            raise ValueError(f"Invalid port range {range_min}-{range_max}.")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")

        for attempt in range(1, max_attempts + 1):
            candidate = self.rng.randint(range_min, range_max)
            if self.probe.probe(candidate):
                self.probe.reserve(candidate)
                log.debug("Allocated port %s on attempt %s.", candidate, attempt)
                return candidate

        raise NoFreePort(
            f"Unable to find a free port in {range_min}-{range_max} "
            f"after {max_attempts} attempts."
        )


__all__ = ["HostPortProbe", "NoFreePort", "PortAllocator", "PortProbe"]
