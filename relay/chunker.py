"""Split long replies into platform-sized messages."""

from __future__ import annotations

import re

_PREFIX = re.compile(r"^\((\d+)/(\d+)\) ")

# Room a platform must leave on top of the limit for the widest marker
MARKER_RESERVE = len("(9999/9999) ")


def chunk(reply: str, limit: int) -> list[str]:
    """Cut reply into exact limit-sized pieces.

    No word or line boundary handling. Every piece after the first carries an
    "(i/total) " marker; the marker is not counted against the limit.
    """
    if limit < 1:
        raise ValueError("limit must be positive")
    if len(reply) <= limit:
        return [reply]

    pieces = [reply[i:i + limit] for i in range(0, len(reply), limit)]
    total = len(pieces)
    return [pieces[0]] + [
        f"({i}/{total}) {body}" for i, body in enumerate(pieces[1:], start=2)
    ]


def strip_marker(piece: str) -> str:
    """Remove a leading "(i/total) " marker, if present."""
    return _PREFIX.sub("", piece, count=1)
