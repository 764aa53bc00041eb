"""Tests for the Docker Compose provider."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from aibrowsectl.providers.compose import ComposeProvider, StackError


def _stub_docker(write_binary: Callable[[str, str], Path], log: Path, fail_on: str = "") -> Path:
    body = f'echo "$@" >> "{log}"\n'
    if fail_on:
        body += f'case "$*" in *" {fail_on}"*) echo "{fail_on} exploded" >&2; exit 3;; esac\n'
    body += "exit 0"
    return write_binary("docker", body)


def test_bring_up_pulls_then_starts(
    tmp_path: Path,
    write_binary: Callable[[str, str], Path],
) -> None:
    """Browser stacks pull images before ``up -d --remove-orphans``."""
    log = tmp_path / "calls.log"
    docker = _stub_docker(write_binary, log)
    instance_dir = tmp_path / "demo"
    provider = ComposeProvider((str(docker), "compose"))

    provider.bring_up(instance_dir, "aibrowse-demo")

    prefix = (
        f"compose --env-file {instance_dir}/.compose.env "
        f"--project-directory {instance_dir} --project-name aibrowse-demo"
    )
    assert log.read_text().splitlines() == [
        f"{prefix} pull",
        f"{prefix} up -d --remove-orphans",
    ]


def test_bring_up_builds_for_wrapper(
    tmp_path: Path,
    write_binary: Callable[[str, str], Path],
) -> None:
    """Wrapper stacks build their image with ``--pull``."""
    log = tmp_path / "calls.log"
    docker = _stub_docker(write_binary, log)
    provider = ComposeProvider((str(docker), "compose"))

    provider.bring_up(tmp_path / "demo", "browsewrap-demo", build=True)

    calls = log.read_text().splitlines()
    assert calls[0].endswith("--project-name browsewrap-demo build --pull")
    assert calls[1].endswith("up -d --remove-orphans")


def test_failed_pull_never_starts_stack(
    tmp_path: Path,
    write_binary: Callable[[str, str], Path],
) -> None:
    """A failing pull raises ``StackError`` and ``up`` is not attempted."""
    log = tmp_path / "calls.log"
    docker = _stub_docker(write_binary, log, fail_on="pull")
    provider = ComposeProvider((str(docker), "compose"))

    with pytest.raises(StackError, match="pull exploded") as excinfo:
        provider.bring_up(tmp_path / "demo", "aibrowse-demo")

    assert excinfo.value.kind == "stack"
    assert "exit 3" in str(excinfo.value)
    assert len(log.read_text().splitlines()) == 1


def test_legacy_compose_binary(
    tmp_path: Path,
    write_binary: Callable[[str, str], Path],
) -> None:
    """The standalone ``docker-compose`` binary is invoked without a subcommand prefix."""
    log = tmp_path / "calls.log"
    legacy = write_binary("docker-compose", f'echo "$@" >> "{log}"')
    provider = ComposeProvider((str(legacy),))

    provider.up(tmp_path / "demo", "aibrowse-demo")

    assert log.read_text().startswith("--env-file ")


def test_missing_binary_raises_stack_error(tmp_path: Path) -> None:
    """A compose binary that does not exist is reported as a stack failure."""
    provider = ComposeProvider((str(tmp_path / "missing-docker"), "compose"))

    with pytest.raises(StackError, match="not found"):
        provider.pull(tmp_path / "demo", "aibrowse-demo")
