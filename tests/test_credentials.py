"""Tests for token generation helpers."""
from __future__ import annotations

from aibrowsectl.credentials import generate_token, is_token, redact


def test_generate_token_shape() -> None:
    """Tokens are 48 lowercase hex characters and never repeat."""
    tokens = {generate_token() for _ in range(50)}

    assert len(tokens) == 50
    assert all(is_token(token) for token in tokens)


def test_is_token_rejects_other_values() -> None:
    """Values of the wrong length or alphabet are not tokens."""
    assert not is_token("")
    assert not is_token("A" * 48)
    assert not is_token("a" * 47)


def test_redact_hides_most_of_token() -> None:
    """Redaction keeps only a short prefix and suffix."""
    token = "0123456789abcdef" * 3

    assert redact(token) == "0123...ef"
    assert redact("short") == "****"
