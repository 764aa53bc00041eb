"""firewalld provider opening instance ports.

Firewall coverage is best effort. Hosts without firewalld, or with firewalld
installed but stopped, are skipped with a log line; only a failing rule
change or reload aborts provisioning.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from ..errors import ProvisionError

log = logging.getLogger(__name__)


class FirewallError(ProvisionError):
    """Raised when firewalld rejects a rule change or reload."""

    kind = "firewall"


class FirewallOutcome(str, Enum):
    """Result of :meth:`FirewalldProvider.open_port`."""

    OPENED = "opened"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


@dataclass(slots=True)
class FirewalldProvider:
    """Manage permanent port rules through ``firewall-cmd``."""

    firewall_cmd_bin: str = "firewall-cmd"

    def available(self) -> bool:
        """Return ``True`` when ``firewall-cmd`` is on the PATH."""
        return shutil.which(self.firewall_cmd_bin) is not None

    def running(self) -> bool:
        """Return ``True`` when ``firewall-cmd --state`` reports a running daemon."""
        return self._run(["--state"]).returncode == 0

    def open_port(self, port: int, zone: str = "trusted", protocol: str = "tcp") -> FirewallOutcome:
        """Persistently open *port* in *zone* and reload the firewall."""
        if not self.available():
            log.info("firewalld not found; skipping firewall configuration.")
            return FirewallOutcome.SKIPPED
        if not self.running():
            log.warning("firewalld is installed but inactive; skipping firewall configuration.")
            return FirewallOutcome.SKIPPED

        rule = f"{port}/{protocol}"
        query = self._run(["--permanent", f"--zone={zone}", f"--query-port={rule}"])
        if query.returncode == 0:
            log.info("Port %s already open in %s zone.", rule, zone)
            return FirewallOutcome.UNCHANGED

        self._checked(["--permanent", f"--zone={zone}", f"--add-port={rule}"])
        self._checked(["--reload"])
        log.info("Opened port %s in %s zone.", rule, zone)
        return FirewallOutcome.OPENED

    # ------------------------------------------------------------------
    def _checked(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        result = self._run(args)
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise FirewallError(
                f"{self.firewall_cmd_bin} {' '.join(args)} failed "
                f"(exit {result.returncode}): {message}"
            )
        return result

    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.firewall_cmd_bin, *args]
        try:
            return subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise FirewallError(f"{self.firewall_cmd_bin} not found: {exc}") from exc


__all__ = ["FirewallError", "FirewallOutcome", "FirewalldProvider"]
