"""Credential helpers for instance tokens."""
from __future__ import annotations

import re
import secrets

TOKEN_BYTES = 24
TOKEN_PATTERN = re.compile(r"[0-9a-f]{48}")


def generate_token() -> str:
    """Return a fresh 48 character hex token from the OS CSPRNG."""
    return secrets.token_hex(TOKEN_BYTES)


def is_token(value: str) -> bool:
    """Return ``True`` when *value* has the shape of a generated token."""
    return TOKEN_PATTERN.fullmatch(value) is not None


def redact(token: str) -> str:
    """Return a log-safe form of *token*."""
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}...{token[-2:]}"


__all__ = ["TOKEN_BYTES", "generate_token", "is_token", "redact"]
