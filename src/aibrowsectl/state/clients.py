"""Shared client registry consumed by external tooling.

The registry is a user-level JSON document (``~/mcp.json`` by default) with a
``clients`` list. Wrapper provisioning publishes one entry per instance keyed
by ``id``; every other entry and top-level key is preserved as-is.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import ProvisionError

log = logging.getLogger(__name__)

REGISTRY_MODE = 0o644


class ClientRegistryError(ProvisionError):
    """Raised when the client registry cannot be updated."""

    kind = "client-registry"


@dataclass(frozen=True)
class ClientRegistry:
    """Read-modify-write access to the shared client registry."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the registry path after initialisation."""
        object.__setattr__(self, "path", Path(self.path).expanduser())

    def read(self) -> dict[str, Any]:
        """Return the registry document (empty mapping when missing or unreadable)."""
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            log.warning("Client registry %s is not valid JSON (%s); starting fresh.", self.path, exc)
            return {}
        if not isinstance(data, dict):
            log.warning("Client registry %s is not a JSON object; starting fresh.", self.path)
            return {}
        return data

    def get(self, client_id: str) -> dict[str, Any] | None:
        """Return the entry registered under *client_id*, if any."""
        for entry in _clients(self.read()):
            if entry.get("id") == client_id:
                return deepcopy(entry)
        return None

    def upsert(self, entry: Mapping[str, object]) -> bool:
        """Replace or append *entry* by ``id``; return ``True`` when the file changed."""
        client_id = str(entry.get("id", "")).strip()
        if not client_id:
            raise ClientRegistryError("Client registry entries require a non-empty 'id'.")

        data = self.read()
        before = json.dumps(data, sort_keys=True)
        raw_clients = data.get("clients", [])
        if not isinstance(raw_clients, list):
            raise ClientRegistryError(
                f"Client registry {self.path} has a non-list 'clients' value; "
                "fix it by hand before publishing new entries."
            )
        clients: list[Any] = []
        replaced = False
        for item in raw_clients:
            if isinstance(item, dict) and item.get("id") == client_id:
                if not replaced:
                    clients.append(dict(entry))
                    replaced = True
                continue
            clients.append(item)
        if not replaced:
            clients.append(dict(entry))
        data["clients"] = clients
        if json.dumps(data, sort_keys=True) == before and self.path.exists():
            return False
        self._write(data)
        return True

    def _write(self, data: Mapping[str, object]) -> None:
        parent = self.path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(parent), prefix=f".{self.path.name}.")
        except OSError as exc:
            raise ClientRegistryError(f"Cannot write client registry {self.path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
                handle.write("\n")
            os.chmod(tmp_path, REGISTRY_MODE)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise ClientRegistryError(f"Cannot write client registry {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _clients(data: Mapping[str, object]) -> list[dict[str, Any]]:
    raw = data.get("clients", [])
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


__all__ = ["ClientRegistry", "ClientRegistryError"]
