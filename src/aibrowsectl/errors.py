"""Error taxonomy shared by the provisioning components.

Every failure that terminates a provisioning run derives from
:class:`ProvisionError`. The ``kind`` attribute is a stable identifier written
to the structured operations log so automation can branch on the failure class
without parsing messages.
"""
from __future__ import annotations


class ProvisionError(RuntimeError):
    """Base class for fatal provisioning failures."""

    kind = "provision"


class ValidationError(ProvisionError):
    """Raised when an instance name (or other operator input) is invalid."""

    kind = "validation"


class MissingDependency(ProvisionError):
    """Raised when a required external tool is unavailable."""

    kind = "missing-dependency"

    def __init__(self, capability: str, detail: str) -> None:
        """Record the missing *capability* alongside a human readable *detail*."""
        super().__init__(f"Missing dependency: {detail}")
        self.capability = capability


class InsufficientPrivileges(ProvisionError):
    """Raised when the provisioner runs without the privileges it needs."""

    kind = "insufficient-privileges"


class UpstreamNotFound(ProvisionError):
    """Raised when a dependent instance has no usable primary record."""

    kind = "upstream-not-found"


class FilesystemError(ProvisionError):
    """Raised when an instance directory or file cannot be written."""

    kind = "filesystem"


__all__ = [
    "FilesystemError",
    "InsufficientPrivileges",
    "MissingDependency",
    "ProvisionError",
    "UpstreamNotFound",
    "ValidationError",
]
