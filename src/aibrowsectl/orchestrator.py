"""End-to-end provisioning of browser and wrapper instances.

A provisioning run is a linear state machine::

    validate-name -> check-dependencies -> [resolve-upstream] ->
    load-or-create-record -> render-definition -> sync-firewall ->
    bring-up-stack -> wait-healthy -> post-condition -> ready

Any step raising :class:`~aibrowsectl.errors.ProvisionError` (or ``OSError``,
reported as a filesystem failure) moves the run to ``failed``. Nothing is
rolled back: containers, firewall rules and files already written stay in
place, and re-running the provisioner converges from there.
"""
from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Generic, TypeVar

from .capabilities import CapabilitySet, detect_capabilities, require_root
from .config import AppConfig, BinariesConfig
from .credentials import generate_token, redact
from .definitions import (
    StackDefinition,
    UpstreamRef,
    render_browser_stack,
    render_wrapper_stack,
)
from .errors import FilesystemError, ProvisionError, UpstreamNotFound, ValidationError
from .health import Probe, healthz_probe, metrics_probe, wait_healthy
from .logging import OperationScope, StructuredLogger
from .ports import HostPortProbe, PortAllocator
from .providers.compose import ComposeProvider
from .providers.firewalld import FirewalldProvider, FirewallOutcome
from .smoke import SMOKE_TEST_FILENAME, Fetcher, capture_screenshot, fetch_url
from .state.clients import ClientRegistry
from .state.records import BrowserRecord, RecordError, RecordStore, WrapperRecord
from .templates import TemplateEngine

log = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"[a-z0-9][a-z0-9_-]{0,62}")
DIRECTORY_MODE = 0o750
WRAPPER_LOG_MODE = 0o640

RecordT = TypeVar("RecordT", BrowserRecord, WrapperRecord)


class ProvisionState(str, Enum):
    """States of a provisioning run."""

    VALIDATE_NAME = "validate-name"
    CHECK_DEPENDENCIES = "check-dependencies"
    RESOLVE_UPSTREAM = "resolve-upstream"
    LOAD_OR_CREATE_RECORD = "load-or-create-record"
    RENDER_DEFINITION = "render-definition"
    SYNC_FIREWALL = "sync-firewall"
    BRING_UP_STACK = "bring-up-stack"
    WAIT_HEALTHY = "wait-healthy"
    POST_CONDITION = "post-condition"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class Failure:
    """Why a run ended in ``failed``."""

    state: ProvisionState
    kind: str
    message: str


@dataclass
class ProvisionOutcome:
    """Terminal result of a provisioning run."""

    name: str
    state: ProvisionState
    instance_dir: Path
    port: int | None = None
    failure: Failure | None = None
    history: list[ProvisionState] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is ProvisionState.READY


def validate_name(name: str) -> str:
    """Return *name* when it is a valid instance name, else raise."""
    if not NAME_PATTERN.fullmatch(name or ""):
        raise ValidationError(
            f"Invalid instance name {name!r}. Use 1-63 lowercase letters, digits, "
            "'-' or '_', starting with a letter or digit."
        )
    return name


def ensure_directory(path: Path) -> None:
    """Create *path* (and parents) and enforce the instance directory mode."""
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, DIRECTORY_MODE)


@dataclass
class _Run(Generic[RecordT]):
    name: str
    instance_dir: Path
    outcome: ProvisionOutcome
    capabilities: CapabilitySet | None = None
    record: RecordT | None = None
    definition: StackDefinition | None = None
    upstream: UpstreamRef | None = None

    def require_record(self) -> RecordT:
        if self.record is None:
            raise ProvisionError(f"No record loaded for {self.name}.")
        return self.record

    def require_definition(self) -> StackDefinition:
        if self.definition is None:
            raise ProvisionError(f"No stack definition rendered for {self.name}.")
        return self.definition

    def require_upstream(self) -> UpstreamRef:
        if self.upstream is None:
            raise ProvisionError(f"No upstream resolved for {self.name}.")
        return self.upstream


Step = Callable[[_Run], str]


class InstanceProvisioner(Generic[RecordT]):
    """Shared state machine driver; subclasses supply the per-kind steps."""

    command = "provision"
    label = "instance"

    def __init__(
        self,
        config: AppConfig,
        *,
        logger: StructuredLogger | None = None,
        engine: TemplateEngine | None = None,
        allocator: PortAllocator | None = None,
        compose: ComposeProvider | None = None,
        firewall: FirewalldProvider | None = None,
        detect: Callable[[BinariesConfig], CapabilitySet] = detect_capabilities,
        geteuid: Callable[[], int] = os.geteuid,
        probe_factory: Callable[[RecordT], Probe] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Wire collaborators; defaults talk to the real host."""
        self.config = config
        self.logger = logger or StructuredLogger(config.logs_dir)
        self.engine = engine or TemplateEngine.with_overrides(config.templates_dir)
        self.allocator = allocator or PortAllocator(
            HostPortProbe(ss_bin=config.binaries.ss, docker_bin=config.binaries.docker)
        )
        self.compose = compose
        self.firewall = firewall or FirewalldProvider(config.binaries.firewall_cmd)
        self._detect = detect
        self._geteuid = geteuid
        self._probe_factory = probe_factory
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Hooks
    @property
    def root(self) -> Path:
        raise NotImplementedError

    def steps(self) -> list[tuple[ProvisionState, Step]]:
        raise NotImplementedError

    def default_probe(self, record: RecordT) -> Probe:
        raise NotImplementedError

    # ------------------------------------------------------------------
    def run(self, name: str) -> ProvisionOutcome:
        """Provision instance *name* and return the terminal outcome."""
        instance_dir = self.root / (name or "")
        outcome = ProvisionOutcome(name=name, state=ProvisionState.VALIDATE_NAME, instance_dir=instance_dir)
        run: _Run[RecordT] = _Run(name=name, instance_dir=instance_dir, outcome=outcome)

        with self.logger.operation(
            self.command,
            args={"name": name},
            target={"kind": self.label, "name": name, "path": instance_dir},
        ) as op:
            for state, step in self.steps():
                outcome.state = state
                outcome.history.append(state)
                try:
                    detail = step(run)
                except ProvisionError as exc:
                    return self._fail(op, outcome, state, exc)
                except OSError as exc:
                    return self._fail(op, outcome, state, FilesystemError(str(exc)))
                op.add_step(state.value, detail=detail)

            outcome.state = ProvisionState.READY
            outcome.history.append(ProvisionState.READY)
            message = f"{self.label.capitalize()} {name} is ready on port {outcome.port}."
            context = {"port": outcome.port, "instance_dir": instance_dir}
            if outcome.warnings:
                op.warning(
                    message,
                    changed=len(outcome.changed),
                    warnings=outcome.warnings,
                    context=context,
                )
            else:
                op.success(message, changed=len(outcome.changed), context=context)
            log.info(message)
            return outcome

    def _fail(
        self,
        op: OperationScope,
        outcome: ProvisionOutcome,
        state: ProvisionState,
        exc: ProvisionError,
    ) -> ProvisionOutcome:
        failure = Failure(state=state, kind=exc.kind, message=str(exc))
        outcome.failure = failure
        outcome.state = ProvisionState.FAILED
        outcome.history.append(ProvisionState.FAILED)
        op.add_step(state.value, status="error", detail=str(exc))
        op.error(str(exc), context={"state": state.value, "kind": exc.kind})
        log.error("%s", exc)
        return outcome

    # ------------------------------------------------------------------
    # Shared steps
    def _validate_name(self, run: _Run) -> str:
        validate_name(run.name)
        return run.name

    def _check_dependencies(self, run: _Run) -> str:
        require_root(self.config.require_root, geteuid=self._geteuid)
        capabilities = self._detect(self.config.binaries)
        capabilities.require()
        run.capabilities = capabilities
        if self.compose is None:
            self.compose = ComposeProvider(capabilities.compose_cmd)
        return " ".join(self.compose.compose_cmd)

    def _sync_firewall(self, run: _Run) -> str:
        port = run.require_record().port
        outcome = self.firewall.open_port(
            port,
            zone=self.config.firewall.zone,
            protocol=self.config.firewall.protocol,
        )
        if outcome is FirewallOutcome.OPENED:
            run.outcome.changed.append(f"firewall:{port}/{self.config.firewall.protocol}")
        return outcome.value

    def _wait_healthy(self, run: _Run) -> str:
        factory = self._probe_factory or self.default_probe
        attempts = wait_healthy(
            factory(run.require_record()),
            interval=self.config.health.interval,
            max_attempts=self.config.health.max_attempts,
            sleep=self._sleep,
            label=f"{self.label} {run.name}",
        )
        return f"healthy after {attempts} attempt(s)"

    def _require_compose(self) -> ComposeProvider:
        if self.compose is None:
            raise ProvisionError("Compose command was not resolved; dependency check did not run.")
        return self.compose

    def _write_definition(self, run: _Run, definition: StackDefinition) -> str:
        run.definition = definition
        changed = definition.write(run.instance_dir)
        run.outcome.changed.extend(changed)
        return f"changed: {', '.join(changed)}" if changed else "unchanged"

    def _allocate(self, port_range_min: int, port_range_max: int) -> int:
        return self.allocator.allocate(
            port_range_min,
            port_range_max,
            self.config.ports.max_attempts,
        )


class BrowserProvisioner(InstanceProvisioner[BrowserRecord]):
    """Provision a browserless instance under the browser root."""

    command = "aibrowse-setup"
    label = "browser"

    def __init__(self, config: AppConfig, *, fetch: Fetcher = fetch_url, **kwargs: object) -> None:
        """Accept a screenshot *fetch* hook on top of the shared collaborators."""
        super().__init__(config, **kwargs)  # type: ignore[arg-type]
        self.store: RecordStore[BrowserRecord] = RecordStore(BrowserRecord)
        self._fetch = fetch

    @property
    def root(self) -> Path:
        return self.config.browser.root

    def steps(self) -> list[tuple[ProvisionState, Step]]:
        return [
            (ProvisionState.VALIDATE_NAME, self._validate_name),
            (ProvisionState.CHECK_DEPENDENCIES, self._check_dependencies),
            (ProvisionState.LOAD_OR_CREATE_RECORD, self._load_or_create_record),
            (ProvisionState.RENDER_DEFINITION, self._render_definition),
            (ProvisionState.SYNC_FIREWALL, self._sync_firewall),
            (ProvisionState.BRING_UP_STACK, self._bring_up_stack),
            (ProvisionState.WAIT_HEALTHY, self._wait_healthy),
            (ProvisionState.POST_CONDITION, self._smoke_test),
        ]

    def default_probe(self, record: BrowserRecord) -> Probe:
        return metrics_probe(record.port, record.token, timeout=self.config.health.timeout)

    def _load_or_create_record(self, run: _Run[BrowserRecord]) -> str:
        instance_dir = run.instance_dir
        for path in (instance_dir, *(instance_dir / sub for sub in ("profiles", "downloads", "logs"))):
            ensure_directory(path)

        record = self.store.load(instance_dir)
        if record is not None:
            log.info("Reusing existing configuration for %s.", run.name)
            detail = f"reused port {record.port}"
        else:
            settings = self.config.browser
            port = self._allocate(settings.ports.min, settings.ports.max)
            record = BrowserRecord(
                name=run.name,
                port=port,
                token=generate_token(),
                download_dir=instance_dir / "downloads",
                log_dir=instance_dir / "logs",
            )
            self.store.save(instance_dir, record)
            run.outcome.changed.append(self.store.filename)
            log.info(
                "Generated new credentials (token %s) and configuration.",
                redact(record.token),
            )
            detail = f"allocated port {port}"
        run.record = record
        run.outcome.port = record.port
        return detail

    def _render_definition(self, run: _Run[BrowserRecord]) -> str:
        record = run.require_record()
        definition = render_browser_stack(
            self.engine,
            self.config.browser,
            run.instance_dir,
            run.name,
            record.port,
            record.token,
        )
        return self._write_definition(run, definition)

    def _bring_up_stack(self, run: _Run[BrowserRecord]) -> str:
        project = run.require_definition().project
        self._require_compose().bring_up(run.instance_dir, project)
        return project

    def _smoke_test(self, run: _Run[BrowserRecord]) -> str:
        record = run.require_record()
        settings = self.config.browser
        result = capture_screenshot(
            run.instance_dir / "downloads" / SMOKE_TEST_FILENAME,
            port=record.port,
            token=record.token,
            target=settings.smoke_test_url,
            retries=settings.smoke_test_retries,
            retry_delay=settings.smoke_test_retry_delay,
            min_bytes=settings.smoke_test_min_bytes,
            fetch=self._fetch,
            sleep=self._sleep,
        )
        if result.undersized:
            run.outcome.warnings.append(
                f"Smoke test screenshot appears smaller than expected ({result.size} bytes)."
            )
        return f"{result.path} ({result.size} bytes)"


class WrapperProvisioner(InstanceProvisioner[WrapperRecord]):
    """Provision the HTTP wrapper fronting a browser instance of the same name."""

    command = "browsewrap-setup"
    label = "wrapper"

    def __init__(
        self,
        config: AppConfig,
        *,
        registry: ClientRegistry | None = None,
        **kwargs: object,
    ) -> None:
        """Accept a client *registry* on top of the shared collaborators."""
        super().__init__(config, **kwargs)  # type: ignore[arg-type]
        self.store: RecordStore[WrapperRecord] = RecordStore(WrapperRecord)
        self.upstream_store: RecordStore[BrowserRecord] = RecordStore(BrowserRecord)
        self.registry = registry or ClientRegistry(config.client_registry)

    @property
    def root(self) -> Path:
        return self.config.wrapper.root

    def steps(self) -> list[tuple[ProvisionState, Step]]:
        return [
            (ProvisionState.VALIDATE_NAME, self._validate_name),
            (ProvisionState.CHECK_DEPENDENCIES, self._check_dependencies),
            (ProvisionState.RESOLVE_UPSTREAM, self._resolve_upstream),
            (ProvisionState.LOAD_OR_CREATE_RECORD, self._load_or_create_record),
            (ProvisionState.RENDER_DEFINITION, self._render_definition),
            (ProvisionState.SYNC_FIREWALL, self._sync_firewall),
            (ProvisionState.BRING_UP_STACK, self._bring_up_stack),
            (ProvisionState.WAIT_HEALTHY, self._wait_healthy),
            (ProvisionState.POST_CONDITION, self._publish_client),
        ]

    def default_probe(self, record: WrapperRecord) -> Probe:
        return healthz_probe(record.port, timeout=self.config.health.timeout)

    def _resolve_upstream(self, run: _Run[WrapperRecord]) -> str:
        upstream_dir = self.config.browser.root / run.name
        try:
            upstream = self.upstream_store.load(upstream_dir)
        except RecordError as exc:
            raise UpstreamNotFound(
                f"Browser instance {run.name} at {upstream_dir} is unusable: {exc}"
            ) from exc
        if upstream is None:
            raise UpstreamNotFound(
                f"Browser instance {run.name} not found at {upstream_dir}. "
                f"Run aibrowse-setup {run.name} first."
            )
        run.upstream = UpstreamRef(name=run.name, port=upstream.port, token=upstream.token)
        return f"{upstream_dir} port {upstream.port}"

    def _load_or_create_record(self, run: _Run[WrapperRecord]) -> str:
        upstream = run.require_upstream()
        instance_dir = run.instance_dir
        for path in (instance_dir, instance_dir / "logs", instance_dir / "app"):
            ensure_directory(path)

        endpoint = f"http://{self.config.wrapper.upstream_host}:{upstream.port}"
        existing = self.store.load(instance_dir)
        if existing is not None:
            log.info("Reusing existing wrapper configuration for %s.", run.name)
            record = replace(
                existing,
                upstream_port=upstream.port,
                upstream_token=upstream.token,
                upstream_endpoint=endpoint,
            )
            detail = f"reused port {record.port}"
        else:
            settings = self.config.wrapper
            port = self._allocate(settings.ports.min, settings.ports.max)
            record = WrapperRecord(
                name=run.name,
                port=port,
                upstream_port=upstream.port,
                upstream_token=upstream.token,
                upstream_endpoint=endpoint,
                log_dir=instance_dir / "logs",
            )
            detail = f"allocated port {port}"
        if record != existing:
            self.store.save(instance_dir, record)
            run.outcome.changed.append(self.store.filename)
        run.record = record
        run.outcome.port = record.port
        return detail

    def _render_definition(self, run: _Run[WrapperRecord]) -> str:
        record = run.require_record()
        upstream = run.require_upstream()
        definition = render_wrapper_stack(
            self.engine,
            self.config.wrapper,
            run.instance_dir,
            run.name,
            record.port,
            upstream,
        )
        detail = self._write_definition(run, definition)

        wrapper_log = run.instance_dir / "logs" / "wrapper.log"
        wrapper_log.touch(exist_ok=True)
        os.chmod(wrapper_log, WRAPPER_LOG_MODE)
        return detail

    def _bring_up_stack(self, run: _Run[WrapperRecord]) -> str:
        project = run.require_definition().project
        self._require_compose().bring_up(run.instance_dir, project, build=True)
        return project

    def _publish_client(self, run: _Run[WrapperRecord]) -> str:
        record = run.require_record()
        entry = client_entry(run.name, record)
        changed = self.registry.upsert(entry)
        if changed:
            run.outcome.changed.append(str(self.registry.path))
        log.info("Health endpoint: http://localhost:%s/healthz", record.port)
        return f"{entry['id']} {'updated' if changed else 'unchanged'}"


def client_entry(name: str, record: WrapperRecord) -> dict[str, object]:
    """Return the client registry entry published for wrapper *name*."""
    return {
        "id": f"browsewrap-{name}",
        "label": f"browsewrap {name}",
        "endpoint": f"http://localhost:{record.port}",
        "token": record.upstream_token,
    }


__all__ = [
    "BrowserProvisioner",
    "Failure",
    "InstanceProvisioner",
    "NAME_PATTERN",
    "ProvisionOutcome",
    "ProvisionState",
    "WrapperProvisioner",
    "client_entry",
    "ensure_directory",
    "validate_name",
]
