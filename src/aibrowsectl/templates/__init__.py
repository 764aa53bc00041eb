"""Jinja2 template engine used to render stack definitions.

Built-in templates ship inside the package under ``aibrowsectl/templates``.
Operators may shadow any of them by dropping a file with the same relative
name into the configured override directory (``templates_dir``).
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, PackageLoader, StrictUndefined


@dataclass(slots=True)
class TemplateEngine:
    """Render templates with strict undefined handling."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("aibrowsectl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        template = self.environment.get_template(template_name)
        return template.render(**dict(context))

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o640,
    ) -> bool:
        """Render into *destination*; return ``True`` when the file changed."""
        content = self.render_to_string(template_name, context)
        return write_if_changed(destination, content, mode=mode)


def write_if_changed(destination: Path, content: str, *, mode: int = 0o640) -> bool:
    """Atomically write *content* to *destination* unless it is already identical.

    The permissions are enforced even when the content is unchanged so a file
    that was loosened by hand is tightened again on the next run.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    if destination.exists():
        if destination.read_bytes() == content.encode("utf-8"):
            if (destination.stat().st_mode & 0o777) != mode:
                os.chmod(destination, mode)
            return False

    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        os.fchmod(tmp_fd, mode)
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["TemplateEngine", "write_if_changed"]
