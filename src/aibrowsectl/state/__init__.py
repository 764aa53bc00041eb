"""State helpers: per-instance records and the shared client registry."""
from __future__ import annotations

from .clients import ClientRegistry, ClientRegistryError
from .records import (
    BrowserRecord,
    IncompleteRecord,
    MalformedRecord,
    RecordError,
    RecordStore,
    WrapperRecord,
)

__all__ = [
    "BrowserRecord",
    "ClientRegistry",
    "ClientRegistryError",
    "IncompleteRecord",
    "MalformedRecord",
    "RecordError",
    "RecordStore",
    "WrapperRecord",
]
