"""Docker Compose provider driving instance stacks."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ProvisionError

log = logging.getLogger(__name__)

PROJECT_ENV_FILENAME = ".compose.env"


class StackError(ProvisionError):
    """Raised when a compose command fails."""

    kind = "stack"


@dataclass(slots=True)
class ComposeProvider:
    """Run ``docker compose`` (or legacy ``docker-compose``) for an instance."""

    compose_cmd: tuple[str, ...] = ("docker", "compose")

    def pull(self, instance_dir: Path, project: str) -> subprocess.CompletedProcess[str]:
        """Pull the images referenced by the stack."""
        return self._compose(instance_dir, project, ["pull"])

    def build(
        self,
        instance_dir: Path,
        project: str,
        *,
        pull: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Build the stack images, refreshing base images when *pull* is set."""
        args = ["build", "--pull"] if pull else ["build"]
        return self._compose(instance_dir, project, args)

    def up(self, instance_dir: Path, project: str) -> subprocess.CompletedProcess[str]:
        """Start the stack detached and drop containers left over from older runs."""
        return self._compose(instance_dir, project, ["up", "-d", "--remove-orphans"])

    def bring_up(self, instance_dir: Path, project: str, *, build: bool = False) -> None:
        """Fetch images then start the stack; nothing starts if the fetch fails."""
        if build:
            self.build(instance_dir, project)
            log.info("Built images for %s.", project)
        else:
            self.pull(instance_dir, project)
            log.info("Pulled images for %s.", project)
        self.up(instance_dir, project)
        log.info("Started stack %s.", project)

    # ------------------------------------------------------------------
    def _compose(
        self,
        instance_dir: Path,
        project: str,
        args: Sequence[str],
    ) -> subprocess.CompletedProcess[str]:
        command = [
            *self.compose_cmd,
            "--env-file",
            str(instance_dir / PROJECT_ENV_FILENAME),
            "--project-directory",
            str(instance_dir),
            "--project-name",
            project,
            *args,
        ]
        label = f"{' '.join(self.compose_cmd)} {' '.join(args)}"
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise StackError(f"{self.compose_cmd[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise StackError(f"{label} failed for {project} (exit {result.returncode}): {message}")
        return result


__all__ = ["ComposeProvider", "PROJECT_ENV_FILENAME", "StackError"]
