"""Typer command line entry points for ``aibrowsectl``.

Three console scripts share this module: ``aibrowse-setup NAME`` and
``browsewrap-setup NAME`` each provision one instance kind, while the
``aibrowsectl`` umbrella exposes both as ``browser`` and ``wrapper``
subcommands. Every command exits ``0`` once the instance is ready and ``1``
on any failure; diagnostics are written to stderr as ``LEVEL: message``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .logging import LOGGER_NAME, StructuredLogger, configure_console_logging
from .orchestrator import BrowserProvisioner, ProvisionOutcome, WrapperProvisioner
from .templates import TemplateEngine

console = Console()
log = logging.getLogger(LOGGER_NAME)

NAME_ARGUMENT = typer.Argument(
    "",
    show_default=False,
    help="Instance name (lowercase letters, digits, '-' or '_').",
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to aibrowsectl's YAML config file.",
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine


def _fail(message: str) -> NoReturn:
    log.error("%s", message)
    raise typer.Exit(code=int(ExitCode.FAILURE))


def _build_runtime(config_file: Path | None = None) -> RuntimeContext:
    configure_console_logging()
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        _fail(f"Configuration error: {exc}")
    return RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
    )


def _get_runtime(ctx: typer.Context | None, config_file: Path | None = None) -> RuntimeContext:
    runtime = ctx.obj if ctx is not None else None
    if isinstance(runtime, RuntimeContext):
        return runtime
    runtime = _build_runtime(config_file)
    if ctx is not None:
        ctx.obj = runtime
    return runtime


def _finish(outcome: ProvisionOutcome) -> None:
    if not outcome.ok:
        raise typer.Exit(code=int(ExitCode.FAILURE))


def provision_browser(runtime: RuntimeContext, name: str) -> None:
    """Run the browser provisioner and report the result."""
    provisioner = BrowserProvisioner(
        runtime.config,
        logger=runtime.logger,
        engine=runtime.templates,
    )
    outcome = provisioner.run(name)
    _finish(outcome)
    console.print(
        f"[green]Browser instance {name} is ready on port {outcome.port}.[/green]"
    )
    console.print(f"Credentials stored in {outcome.instance_dir / '.env'} (permissions 0600).")
    console.print(f"Smoke test image: {outcome.instance_dir / 'downloads' / 'smoke-test.png'}")


def provision_wrapper(runtime: RuntimeContext, name: str) -> None:
    """Run the wrapper provisioner and report the result."""
    provisioner = WrapperProvisioner(
        runtime.config,
        logger=runtime.logger,
        engine=runtime.templates,
    )
    outcome = provisioner.run(name)
    _finish(outcome)
    console.print(f"[green]Wrapper {name} is ready on port {outcome.port}.[/green]")
    console.print(f"Health endpoint: http://localhost:{outcome.port}/healthz")
    console.print(f"Configuration stored in {outcome.instance_dir / '.env'}")


# ----------------------------------------------------------------------
# Single-purpose scripts
browser_app = typer.Typer(add_completion=False, help="Provision a browserless instance.")
wrapper_app = typer.Typer(add_completion=False, help="Provision the HTTP wrapper for an instance.")


@browser_app.command()
def aibrowse_setup(name: str = NAME_ARGUMENT) -> None:
    """Create or converge browser instance NAME."""
    provision_browser(_get_runtime(None), name)


@wrapper_app.command()
def browsewrap_setup(name: str = NAME_ARGUMENT) -> None:
    """Create or converge the wrapper in front of browser instance NAME."""
    provision_wrapper(_get_runtime(None), name)


# ----------------------------------------------------------------------
# Umbrella CLI
app = typer.Typer(
    add_completion=False,
    help="Provision browserless instances and their HTTP wrappers.",
)


@app.callback(invoke_without_command=True)
def _root(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the aibrowsectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"aibrowsectl {__version__}")
        raise typer.Exit(code=int(ExitCode.OK))

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=int(ExitCode.OK))

    _get_runtime(ctx, config_file)


@app.command("browser")
def browser_command(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Create or converge browser instance NAME."""
    provision_browser(_get_runtime(ctx), name)


@app.command("wrapper")
def wrapper_command(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Create or converge the wrapper in front of browser instance NAME."""
    provision_wrapper(_get_runtime(ctx), name)


def main() -> None:
    """Console script entry point for ``aibrowsectl``."""
    app()


def browser_main() -> None:
    """Console script entry point for ``aibrowse-setup``."""
    browser_app()


def wrapper_main() -> None:
    """Console script entry point for ``browsewrap-setup``."""
    wrapper_app()


__all__ = [
    "RuntimeContext",
    "app",
    "browser_app",
    "main",
    "provision_browser",
    "provision_wrapper",
    "wrapper_app",
]
