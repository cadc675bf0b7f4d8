"""Admission control for concurrent assistant invocations."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Iterator

DEFAULT_MAX_CONCURRENT = 3


class ConcurrencyGate:
    """Fixed ceiling on in-flight invocations. Refuses, never queues.

    try_admit() and release() never suspend, so callers on one event loop
    can't both see free capacity before either registers.
    """

    def __init__(self, max_concurrent: int = DEFAULT_MAX_CONCURRENT):
        self.max_concurrent = max_concurrent
        self._in_flight: set[str] = set()

    def try_admit(self) -> str | None:
        """Mint a token, or return None when the gate is full."""
        if len(self._in_flight) >= self.max_concurrent:
            return None
        token = uuid.uuid4().hex
        self._in_flight.add(token)
        return token

    def release(self, token: str | None):
        """Remove a token. Unknown or already-released tokens are ignored."""
        if token is not None:
            self._in_flight.discard(token)

    @contextmanager
    def admitted(self) -> Iterator[str | None]:
        """Scoped admission: yields the token (or None) and always releases."""
        token = self.try_admit()
        try:
            yield token
        finally:
            self.release(token)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def available(self) -> int:
        return self.max_concurrent - len(self._in_flight)

    def __contains__(self, token: str) -> bool:
        return token in self._in_flight
