"""Input sanitization for text that may reach the assistant CLI."""

from __future__ import annotations

from dataclasses import dataclass

MAX_LENGTH = 4000

# Characters that enable injection when text reaches a shell.
UNSAFE_CHARS = frozenset("$`\\")
_STRIP_TABLE = str.maketrans({c: None for c in UNSAFE_CHARS})


@dataclass(frozen=True)
class Rejected:
    """Sanitization refused the input."""

    reason: str


def sanitize(raw: str, max_length: int = MAX_LENGTH) -> str | Rejected:
    """Return a cleaned message, or Rejected if nothing usable remains."""
    text = (raw or "").translate(_STRIP_TABLE).strip()
    if not text:
        return Rejected("empty after sanitization")
    return text[:max_length]
