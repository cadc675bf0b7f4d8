"""Request dispatch: admission, cooldown, sanitize, invoke, chunk, reply.

One Dispatcher handles every inbound message. The gate and cooldown checks
run back to back with no await in between, so two messages arriving together
can't both claim the last free slot. The concurrency token is released on
every path, including unexpected exceptions.

Check order is gate first, cooldown second. A request refused for capacity
therefore never reserves a cooldown slot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Hashable, Protocol

from .chunker import chunk
from .cooldown import CooldownTracker
from .errors import FailureKind, InvocationError, classify_failure, log_error
from .gate import ConcurrencyGate
from .runner import AssistantInvoker
from .sanitizer import MAX_LENGTH, Rejected, sanitize

log = logging.getLogger("relay")

MSG_EMPTY = "❌ Message is empty."
MSG_TOO_LONG = "❌ Message too long ({length} chars, max {limit})."
MSG_ATTACHMENTS = "❌ Attachments aren't supported, please send plain text."
MSG_BUSY = "\U0001f6a6 Busy right now ({limit} requests running). Try again in a moment."
MSG_COOLDOWN = "⏳ Please wait {seconds}s..."
MSG_INVALID = "❌ Invalid message: nothing left to send after removing unsupported characters."
MSG_UNEXPECTED = "❌ Sorry, something went wrong. Please try again later."

_FAILURE_MESSAGES = {
    FailureKind.TIMEOUT: (
        "⏱ The assistant timed out.\n"
        "It may just be slow right now, or the CLI hit its known hang. "
        "Try again, or ask a shorter question."
    ),
    FailureKind.NOT_FOUND: (
        "❌ Assistant CLI not found on this host. "
        "Check agent.command in the relay config."
    ),
    FailureKind.PROCESS_ERROR: "❌ The assistant failed: {error}",
    FailureKind.GENERIC: "❌ Sorry, the request failed: {error}",
}


class Status(str, Enum):
    """How a single message was handled."""

    REJECTED = "rejected"
    BUSY = "busy"
    COOLDOWN = "cooldown"
    INVALID = "invalid"
    REPLIED = "replied"
    FAILED = "failed"
    ERROR = "error"


@dataclass(frozen=True)
class InboundMessage:
    text: str
    user_id: Hashable
    chat_id: int = 0
    message_id: int = 0
    has_attachments: bool = False


class Channel(Protocol):
    """Outbound side of the chat the message came from."""

    async def reply(self, text: str) -> None: ...

    async def send(self, text: str) -> None: ...


def failure_message(exc: BaseException) -> str:
    """User-facing diagnostic for a failed invocation."""
    kind = classify_failure(exc)
    error = str(exc)
    if len(error) > 300:
        error = error[:300] + "..."
    return _FAILURE_MESSAGES[kind].format(error=error)


class Dispatcher:
    """Turn chat messages into assistant invocations under backpressure."""

    def __init__(
        self,
        invoker: AssistantInvoker,
        gate: ConcurrencyGate | None = None,
        cooldowns: CooldownTracker | None = None,
        max_length: int = MAX_LENGTH,
        chunk_limit: int = 4000,
        error_log: Path | None = None,
    ):
        self.invoker = invoker
        self.gate = gate if gate is not None else ConcurrencyGate()
        self.cooldowns = cooldowns if cooldowns is not None else CooldownTracker()
        self.max_length = max_length
        self.chunk_limit = chunk_limit
        self.error_log = error_log

    def _validate(self, msg: InboundMessage) -> str | None:
        if msg.has_attachments:
            return MSG_ATTACHMENTS
        if not msg.text or not msg.text.strip():
            return MSG_EMPTY
        if len(msg.text) > self.max_length:
            return MSG_TOO_LONG.format(length=len(msg.text), limit=self.max_length)
        return None

    async def handle(self, msg: InboundMessage, channel: Channel) -> Status:
        """Process one message end to end. Never raises (except cancellation)."""
        try:
            status = await self._dispatch(msg, channel)
        except Exception as exc:
            log.exception("dispatch failed for user %s", msg.user_id)
            log_error(exc, log_path=self.error_log, component="dispatcher")
            try:
                await channel.reply(MSG_UNEXPECTED)
            except Exception:
                log.exception("could not deliver failure notice")
            return Status.ERROR
        log.debug("[%s] '%s' -> %s", msg.user_id, msg.text[:80], status.value)
        return status

    async def _dispatch(self, msg: InboundMessage, channel: Channel) -> Status:
        problem = self._validate(msg)
        if problem:
            await channel.reply(problem)
            return Status.REJECTED

        # -- synchronous section: no await until the token is settled --
        token = self.gate.try_admit()
        if token is None:
            log.debug("gate full (%d in flight)", self.gate.in_flight)
            await channel.reply(MSG_BUSY.format(limit=self.gate.max_concurrent))
            return Status.BUSY

        try:
            wait = self.cooldowns.check_and_reserve(msg.user_id)
            if not wait:
                self.gate.release(token)
                await channel.reply(MSG_COOLDOWN.format(seconds=wait.retry_after))
                return Status.COOLDOWN

            prompt = sanitize(msg.text, self.max_length)
            if isinstance(prompt, Rejected):
                self.gate.release(token)
                await channel.reply(MSG_INVALID)
                return Status.INVALID
            # -- end of synchronous section --

            try:
                reply = await self.invoker.invoke(prompt)
            except InvocationError as exc:
                log_error(exc, log_path=self.error_log, component=exc.component)
                await channel.reply(failure_message(exc))
                return Status.FAILED

            log.info("[%s] reply via %s (%d chars)", msg.user_id, reply.source, len(reply.text))
            pieces = chunk(reply.text, self.chunk_limit)
            await channel.reply(pieces[0])
            for piece in pieces[1:]:
                await channel.send(piece)
            return Status.REPLIED
        finally:
            self.gate.release(token)
