"""SHA-256 helpers used for content-addressed file names."""

from __future__ import annotations

import hashlib


def hash_text(text: str) -> str:
    """Hash UTF-8 text to full SHA-256 hex digest (64 chars)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_text_short(text: str, length: int = 16) -> str:
    """Hash UTF-8 text to truncated SHA-256 hex digest."""
    return hash_text(text)[:length]


__all__ = ["hash_text", "hash_text_short"]
