"""Configuration loader for aibrowsectl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults (matching the historical shell provisioners).
2. ``/etc/aibrowsectl/config.yml`` (or the path in ``AIBROWSECTL_CONFIG_FILE``).
3. Environment variables prefixed with ``AIBROWSECTL_``.
4. Explicit overrides supplied programmatically (used by tests).

Environment keys use double underscores to express nesting, e.g.::

    export AIBROWSECTL_BROWSER__ROOT=/srv/aibrowse
    export AIBROWSECTL_HEALTH__MAX_ATTEMPTS=60

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load aibrowsectl configuration. Install with "
        "`pip install aibrowsectl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "AIBROWSECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

MIN_PORT = 1
MAX_PORT = 65535


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortRange:
    """Inclusive host port range reserved for one service kind."""

    min: int
    max: int

    def __contains__(self, port: object) -> bool:
        """Return ``True`` when *port* falls inside the range."""
        return isinstance(port, int) and self.min <= port <= self.max

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"min": self.min, "max": self.max}


@dataclass(frozen=True)
class BrowserSettings:
    """Settings for the browser automation (primary) instances."""

    root: Path = Path("/docker/aibrowse")
    image: str = "ghcr.io/browserless/chrome:latest"
    internal_port: int = 3000
    ports: PortRange = PortRange(20000, 39999)
    connection_timeout_ms: int = 60000
    max_concurrent_sessions: int = 5
    smoke_test_url: str = "https://example.org"
    smoke_test_min_bytes: int = 10240
    smoke_test_retries: int = 5
    smoke_test_retry_delay: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "image": self.image,
            "internal_port": self.internal_port,
            "ports": self.ports.to_dict(),
            "connection_timeout_ms": self.connection_timeout_ms,
            "max_concurrent_sessions": self.max_concurrent_sessions,
            "smoke_test": {
                "url": self.smoke_test_url,
                "min_bytes": self.smoke_test_min_bytes,
                "retries": self.smoke_test_retries,
                "retry_delay": self.smoke_test_retry_delay,
            },
        }


@dataclass(frozen=True)
class WrapperSettings:
    """Settings for the HTTP wrapper (dependent) instances."""

    root: Path = Path("/docker/browsewrap")
    python_image: str = "python:3.12-slim"
    ports: PortRange = PortRange(41000, 58999)
    upstream_host: str = "host.docker.internal"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "python_image": self.python_image,
            "ports": self.ports.to_dict(),
            "upstream_host": self.upstream_host,
        }


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation tunables."""

    max_attempts: int = 25

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_attempts": self.max_attempts}


@dataclass(frozen=True)
class HealthConfig:
    """Health-wait tunables."""

    interval: float = 2.0
    max_attempts: int = 30
    timeout: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "interval": self.interval,
            "max_attempts": self.max_attempts,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class FirewallConfig:
    """Firewall synchronisation settings."""

    zone: str = "trusted"
    protocol: str = "tcp"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"zone": self.zone, "protocol": self.protocol}


@dataclass(frozen=True)
class BinariesConfig:
    """Names or paths of the external tools the provisioners drive."""

    docker: str = "docker"
    docker_compose: str = "docker-compose"
    ss: str = "ss"
    firewall_cmd: str = "firewall-cmd"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker": self.docker,
            "docker_compose": self.docker_compose,
            "ss": self.ss,
            "firewall_cmd": self.firewall_cmd,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for aibrowsectl."""

    config_file: Path
    logs_dir: Path
    templates_dir: Path
    client_registry: Path
    require_root: bool
    browser: BrowserSettings
    wrapper: WrapperSettings
    ports: PortsConfig
    health: HealthConfig
    firewall: FirewallConfig
    binaries: BinariesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "client_registry": str(self.client_registry),
            "require_root": self.require_root,
            "browser": self.browser.to_dict(),
            "wrapper": self.wrapper.to_dict(),
            "ports": self.ports.to_dict(),
            "health": self.health.to_dict(),
            "firewall": self.firewall.to_dict(),
            "binaries": self.binaries.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/aibrowsectl/config.yml",
    "logs_dir": "/var/log/aibrowsectl",
    "templates_dir": "/etc/aibrowsectl/templates",
    "client_registry": "~/mcp.json",
    "require_root": True,
    "browser": {
        "root": "/docker/aibrowse",
        "image": "ghcr.io/browserless/chrome:latest",
        "internal_port": 3000,
        "ports": {"min": 20000, "max": 39999},
        "connection_timeout_ms": 60000,
        "max_concurrent_sessions": 5,
        "smoke_test": {
            "url": "https://example.org",
            "min_bytes": 10240,
            "retries": 5,
            "retry_delay": 2.0,
        },
    },
    "wrapper": {
        "root": "/docker/browsewrap",
        "python_image": "python:3.12-slim",
        "ports": {"min": 41000, "max": 58999},
        "upstream_host": "host.docker.internal",
    },
    "ports": {"max_attempts": 25},
    "health": {"interval": 2.0, "max_attempts": 30, "timeout": 5.0},
    "firewall": {"zone": "trusted", "protocol": "tcp"},
    "binaries": {
        "docker": "docker",
        "docker_compose": "docker-compose",
        "ss": "ss",
        "firewall_cmd": "firewall-cmd",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "browser": {
        "root",
        "image",
        "internal_port",
        "ports",
        "connection_timeout_ms",
        "max_concurrent_sessions",
        "smoke_test",
    },
    "wrapper": {"root", "python_image", "ports", "upstream_host"},
    "ports": {"max_attempts"},
    "health": {"interval", "max_attempts", "timeout"},
    "firewall": {"zone", "protocol"},
    "binaries": {"docker", "docker_compose", "ss", "firewall_cmd"},
}
ALLOWED_FIREWALL_PROTOCOLS = {"tcp", "udp"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, _deep_copy(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    for section in ("browser", "wrapper"):
        section_map = _as_dict(raw.get(section), section)
        ports_map = _as_dict(section_map.get("ports"), f"{section}.ports")
        unknown = set(ports_map.keys()) - {"min", "max"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section}.ports keys: {joined}.")

    browser_map = _as_dict(raw.get("browser"), "browser")
    smoke_map = _as_dict(browser_map.get("smoke_test"), "browser.smoke_test")
    unknown_smoke = set(smoke_map.keys()) - {"url", "min_bytes", "retries", "retry_delay"}
    if unknown_smoke:
        joined = ", ".join(sorted(unknown_smoke))
        raise ConfigError(f"Unknown browser.smoke_test keys: {joined}.")

    firewall_map = _as_dict(raw.get("firewall"), "firewall")
    protocol = firewall_map.get("protocol")
    if protocol is not None and str(protocol) not in ALLOWED_FIREWALL_PROTOCOLS:
        allowed = ", ".join(sorted(ALLOWED_FIREWALL_PROTOCOLS))
        raise ConfigError(f"Unsupported firewall protocol '{protocol}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    browser_map = _as_dict(raw.get("browser"), "browser")
    smoke_map = _as_dict(browser_map.get("smoke_test"), "browser.smoke_test")
    browser_defaults = BrowserSettings()
    browser = BrowserSettings(
        root=_to_path(browser_map.get("root", browser_defaults.root)),
        image=_expect_non_empty_str(browser_map.get("image"), "browser.image", browser_defaults.image),
        internal_port=_expect_port(
            browser_map.get("internal_port"),
            "browser.internal_port",
            default=browser_defaults.internal_port,
        ),
        ports=_build_port_range(browser_map.get("ports"), "browser.ports", browser_defaults.ports),
        connection_timeout_ms=_expect_positive_int(
            browser_map.get("connection_timeout_ms"),
            "browser.connection_timeout_ms",
            default=browser_defaults.connection_timeout_ms,
        ),
        max_concurrent_sessions=_expect_positive_int(
            browser_map.get("max_concurrent_sessions"),
            "browser.max_concurrent_sessions",
            default=browser_defaults.max_concurrent_sessions,
        ),
        smoke_test_url=_expect_non_empty_str(
            smoke_map.get("url"),
            "browser.smoke_test.url",
            browser_defaults.smoke_test_url,
        ),
        smoke_test_min_bytes=_expect_int(
            smoke_map.get("min_bytes"),
            "browser.smoke_test.min_bytes",
            default=browser_defaults.smoke_test_min_bytes,
        ),
        smoke_test_retries=_expect_non_negative_int(
            smoke_map.get("retries"),
            "browser.smoke_test.retries",
            default=browser_defaults.smoke_test_retries,
        ),
        smoke_test_retry_delay=_expect_non_negative_float(
            smoke_map.get("retry_delay"),
            "browser.smoke_test.retry_delay",
            default=browser_defaults.smoke_test_retry_delay,
        ),
    )

    wrapper_map = _as_dict(raw.get("wrapper"), "wrapper")
    wrapper_defaults = WrapperSettings()
    wrapper = WrapperSettings(
        root=_to_path(wrapper_map.get("root", wrapper_defaults.root)),
        python_image=_expect_non_empty_str(
            wrapper_map.get("python_image"),
            "wrapper.python_image",
            wrapper_defaults.python_image,
        ),
        ports=_build_port_range(wrapper_map.get("ports"), "wrapper.ports", wrapper_defaults.ports),
        upstream_host=_expect_non_empty_str(
            wrapper_map.get("upstream_host"),
            "wrapper.upstream_host",
            wrapper_defaults.upstream_host,
        ),
    )

    ports_map = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        max_attempts=_expect_positive_int(
            ports_map.get("max_attempts"), "ports.max_attempts", default=25
        ),
    )

    health_map = _as_dict(raw.get("health"), "health")
    health = HealthConfig(
        interval=_expect_non_negative_float(health_map.get("interval"), "health.interval", default=2.0),
        max_attempts=_expect_positive_int(
            health_map.get("max_attempts"), "health.max_attempts", default=30
        ),
        timeout=_expect_non_negative_float(health_map.get("timeout"), "health.timeout", default=5.0),
    )

    firewall_map = _as_dict(raw.get("firewall"), "firewall")
    firewall = FirewallConfig(
        zone=_expect_non_empty_str(firewall_map.get("zone"), "firewall.zone", "trusted"),
        protocol=str(firewall_map.get("protocol", "tcp")),
    )

    binaries_map = _as_dict(raw.get("binaries"), "binaries")
    binaries_defaults = BinariesConfig()
    binaries = BinariesConfig(
        docker=_expect_non_empty_str(
            binaries_map.get("docker"), "binaries.docker", binaries_defaults.docker
        ),
        docker_compose=_expect_non_empty_str(
            binaries_map.get("docker_compose"),
            "binaries.docker_compose",
            binaries_defaults.docker_compose,
        ),
        ss=_expect_non_empty_str(binaries_map.get("ss"), "binaries.ss", binaries_defaults.ss),
        firewall_cmd=_expect_non_empty_str(
            binaries_map.get("firewall_cmd"),
            "binaries.firewall_cmd",
            binaries_defaults.firewall_cmd,
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        client_registry=_to_path(raw.get("client_registry")),
        require_root=_expect_bool(raw.get("require_root"), "require_root", default=True),
        browser=browser,
        wrapper=wrapper,
        ports=ports,
        health=health,
        firewall=firewall,
        binaries=binaries,
    )


def _build_port_range(value: object | None, label: str, default: PortRange) -> PortRange:
    mapping = _as_dict(value, label)
    low = _expect_port(mapping.get("min"), f"{label}.min", default=default.min)
    high = _expect_port(mapping.get("max"), f"{label}.max", default=default.max)
    if low > high:
        raise ConfigError(f"{label}.min ({low}) must not exceed {label}.max ({high}).")
    return PortRange(low, high)


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_non_negative_int(value: object | None, label: str, *, default: int) -> int:
    number = _expect_int(value, label, default=default)
    if number < 0:
        raise ConfigError(f"{label} must not be negative. Got {number}.")
    return number


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    number = _expect_int(value, label, default=default)
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if not MIN_PORT <= port <= MAX_PORT:
        raise ConfigError(f"{label} must be between {MIN_PORT} and {MAX_PORT}. Got {port}.")
    return port


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_empty_str(value: object | None, label: str, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")
    text = str(value).strip()
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BinariesConfig",
    "BrowserSettings",
    "ConfigError",
    "FirewallConfig",
    "HealthConfig",
    "PortRange",
    "PortsConfig",
    "WrapperSettings",
    "load_config",
]
