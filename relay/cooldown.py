"""Per-user cooldown tracking."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Hashable

DEFAULT_COOLDOWN = 3.0  # seconds


@dataclass(frozen=True)
class CooldownResult:
    allowed: bool
    retry_after: int = 0  # whole seconds, rounded up

    def __bool__(self) -> bool:
        return self.allowed


ALLOWED = CooldownResult(True)


class CooldownTracker:
    """Map user id -> earliest time the next request is accepted.

    Only touched from the event loop's synchronous path, so no lock.
    Entries of users who never come back are dropped by sweep().
    """

    def __init__(
        self,
        cooldown: float = DEFAULT_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown = cooldown
        self._clock = clock
        self._next_allowed: dict[Hashable, float] = {}

    def check_and_reserve(self, user_id: Hashable) -> CooldownResult:
        now = self._clock()
        deadline = self._next_allowed.get(user_id)
        if deadline is not None and now < deadline:
            return CooldownResult(False, math.ceil(deadline - now))
        self._next_allowed[user_id] = now + self.cooldown
        return ALLOWED

    def sweep(self, now: float | None = None) -> int:
        """Drop every entry whose deadline has passed. Returns count removed."""
        if now is None:
            now = self._clock()
        expired = [uid for uid, deadline in self._next_allowed.items() if deadline <= now]
        for uid in expired:
            del self._next_allowed[uid]
        return len(expired)

    def next_allowed_at(self, user_id: Hashable) -> float | None:
        return self._next_allowed.get(user_id)

    def __len__(self) -> int:
        return len(self._next_allowed)

    def __contains__(self, user_id: Hashable) -> bool:
        return user_id in self._next_allowed
