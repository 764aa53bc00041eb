"""Render the declarative stack description for an instance.

Rendering is a pure function of its inputs: the same instance name, port,
credentials and settings always yield byte-identical files, so re-running a
provisioner leaves unchanged stacks untouched.
"""
from __future__ import annotations

from dataclasses import dataclass
from importlib import resources
from pathlib import Path

from .config import BrowserSettings, WrapperSettings
from .providers.compose import PROJECT_ENV_FILENAME
from .templates import TemplateEngine, write_if_changed

COMPOSE_FILENAME = "docker-compose.yml"
LOG_MAX_SIZE = "10m"
LOG_MAX_FILES = 5

BROWSER_VOLUMES: tuple[tuple[str, str], ...] = (
    ("./profiles", "/usr/src/app/profiles"),
    ("./downloads", "/usr/src/app/downloads"),
    ("./logs", "/usr/src/app/logs"),
)


@dataclass(frozen=True)
class RenderedFile:
    """One generated file, relative to the instance directory."""

    path: str
    content: str
    mode: int = 0o640


@dataclass(frozen=True)
class StackDefinition:
    """Ordered set of files making up an instance stack."""

    project: str
    files: tuple[RenderedFile, ...]

    def get(self, path: str) -> RenderedFile:
        """Return the file rendered at *path*."""
        for item in self.files:
            if item.path == path:
                return item
        raise KeyError(path)

    def write(self, instance_dir: Path) -> list[str]:
        """Write every file below *instance_dir*; return the paths that changed."""
        changed: list[str] = []
        for item in self.files:
            if write_if_changed(instance_dir / item.path, item.content, mode=item.mode):
                changed.append(item.path)
        return changed


@dataclass(frozen=True)
class UpstreamRef:
    """Cached view of the browser instance a wrapper fronts."""

    name: str
    port: int
    token: str


def browser_project(name: str) -> str:
    return f"aibrowse-{name}"


def wrapper_project(name: str) -> str:
    return f"browsewrap-{name}"


def render_browser_stack(
    engine: TemplateEngine,
    settings: BrowserSettings,
    instance_dir: Path,
    name: str,
    port: int,
    token: str,
) -> StackDefinition:
    """Render the compose project for browser instance *name*."""
    project = browser_project(name)
    compose = engine.render_to_string(
        "compose/browser.yml.j2",
        {
            "instance_dir": str(instance_dir),
            "instance_name": name,
            "image": settings.image,
            "connection_timeout_ms": settings.connection_timeout_ms,
            "max_concurrent_sessions": settings.max_concurrent_sessions,
            "token": token,
            "volumes": BROWSER_VOLUMES,
            "port": port,
            "internal_port": settings.internal_port,
            "log_max_size": LOG_MAX_SIZE,
            "log_max_files": LOG_MAX_FILES,
        },
    )
    project_env = engine.render_to_string(
        "compose/project.env.j2",
        {"project_name": project, "port_variable": "BROWSERLESS_PORT", "port": port},
    )
    return StackDefinition(
        project=project,
        files=(
            # Embeds the token.
            RenderedFile(COMPOSE_FILENAME, compose, 0o600),
            RenderedFile(PROJECT_ENV_FILENAME, project_env, 0o640),
        ),
    )


def render_wrapper_stack(
    engine: TemplateEngine,
    settings: WrapperSettings,
    instance_dir: Path,
    name: str,
    port: int,
    upstream: UpstreamRef,
) -> StackDefinition:
    """Render the compose project and image sources for wrapper instance *name*."""
    project = wrapper_project(name)
    compose = engine.render_to_string(
        "compose/wrapper.yml.j2",
        {
            "instance_dir": str(instance_dir),
            "instance_name": name,
            "upstream_project": browser_project(upstream.name),
            "upstream_port": upstream.port,
            "port": port,
            "log_max_size": LOG_MAX_SIZE,
            "log_max_files": LOG_MAX_FILES,
        },
    )
    dockerfile = engine.render_to_string(
        "wrapper/Dockerfile.j2",
        {"python_image": settings.python_image, "port": port},
    )
    project_env = engine.render_to_string(
        "compose/project.env.j2",
        {"project_name": project, "port_variable": "WRAPPER_PORT", "port": port},
    )
    return StackDefinition(
        project=project,
        files=(
            RenderedFile(COMPOSE_FILENAME, compose, 0o640),
            RenderedFile("app/Dockerfile", dockerfile, 0o644),
            RenderedFile("app/server.py", wrapper_server_source(), 0o644),
            RenderedFile(PROJECT_ENV_FILENAME, project_env, 0o640),
        ),
    )


def wrapper_server_source() -> str:
    """Return the source of the HTTP entrypoint baked into the wrapper image."""
    return (
        resources.files("aibrowsectl.payload")
        .joinpath("wrapper_server.py")
        .read_text(encoding="utf-8")
    )


__all__ = [
    "BROWSER_VOLUMES",
    "COMPOSE_FILENAME",
    "RenderedFile",
    "StackDefinition",
    "UpstreamRef",
    "browser_project",
    "render_browser_stack",
    "render_wrapper_stack",
    "wrapper_project",
    "wrapper_server_source",
]
