"""Provider interfaces for aibrowsectl."""
from __future__ import annotations

from .compose import ComposeProvider, StackError
from .firewalld import FirewalldProvider, FirewallError, FirewallOutcome

__all__ = [
    "ComposeProvider",
    "FirewallError",
    "FirewallOutcome",
    "FirewalldProvider",
    "StackError",
]
