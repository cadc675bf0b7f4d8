"""Assistant invoker — in-process SDK first, CLI subprocess as fallback.

Two backends:
- SDK mode: calls claude-agent-sdk in-process (~3-5s, no cold start)
- CLI mode: spawns `claude -p <prompt> --output-format json` (slower)

The SDK is known to occasionally return an empty result that the CLI does
not, so any SDK outcome other than a non-empty reply falls through to the
CLI. Both paths see the same sanitized prompt.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable

from .errors import (
    CommandNotFound,
    InvocationError,
    InvocationFault,
    InvocationTimeout,
)

log = logging.getLogger("relay")

try:
    from claude_agent_sdk import ClaudeAgentOptions, ResultMessage
    from claude_agent_sdk import query as sdk_query
except ImportError:
    ClaudeAgentOptions = ResultMessage = sdk_query = None

# query(prompt=..., options=...) -> async iterator of SDK messages
SDKQuery = Callable[..., AsyncIterator[Any]]

# Env vars that make a nested claude process think it runs inside another session
_NESTED_SESSION_VARS = ("CLAUDECODE", "CLAUDE_CODE", "CLAUDE_CODE_ENTRYPOINT")


class SDKStatus(str, Enum):
    UNAVAILABLE = "unavailable"
    SUCCESS = "success"
    EMPTY = "empty"
    ERROR = "error"


@dataclass(frozen=True)
class SDKOutcome:
    status: SDKStatus
    text: str = ""
    error: BaseException | None = None


@dataclass(frozen=True)
class AssistantReply:
    text: str
    source: str  # "sdk" | "cli"
    elapsed: float = 0.0

    def __len__(self) -> int:
        return len(self.text)


class AssistantInvoker:
    """Run one prompt through the SDK, falling back to the CLI.

    Default: Claude Code (`claude -p ... --output-format json`).
    Pass sdk=None to force CLI-only mode.
    """

    def __init__(
        self,
        command: str = "claude",
        sdk: SDKQuery | None = sdk_query,
        sdk_timeout: float = 15.0,
        cli_timeout: float = 15.0,
        kill_grace: float = 5.0,
    ):
        self.command = command
        self.sdk = sdk
        self.sdk_timeout = sdk_timeout
        self.cli_timeout = cli_timeout
        self.kill_grace = kill_grace
        self._resolve_command()

    def _resolve_command(self):
        """Find the full path of the agent command."""
        resolved = shutil.which(self.command)
        if resolved:
            self.command = resolved

    @property
    def sdk_available(self) -> bool:
        return self.sdk is not None

    # -- Main invoke --

    async def invoke(self, prompt: str) -> AssistantReply:
        """Return the assistant's reply, or raise InvocationError."""
        start = time.monotonic()

        outcome = await self._attempt_sdk(prompt)
        if outcome.status is SDKStatus.SUCCESS:
            elapsed = time.monotonic() - start
            log.info("sdk  reply=%d chars  %.1fs", len(outcome.text), elapsed)
            return AssistantReply(outcome.text, "sdk", elapsed)

        if outcome.status is SDKStatus.ERROR:
            log.warning("sdk failed, falling back to CLI: %s", outcome.error)
        elif outcome.status is SDKStatus.EMPTY:
            log.info("sdk returned empty, falling back to CLI")
        else:
            log.debug("sdk unavailable, using CLI")

        text = await self._invoke_cli(prompt)
        elapsed = time.monotonic() - start
        log.info("cli  reply=%d chars  %.1fs", len(text), elapsed)
        return AssistantReply(text, "cli", elapsed)

    # -- SDK path --

    async def _attempt_sdk(self, prompt: str) -> SDKOutcome:
        """Try the in-process SDK. Never raises; the outcome says what happened."""
        if self.sdk is None:
            return SDKOutcome(SDKStatus.UNAVAILABLE)
        try:
            text = await asyncio.wait_for(
                self._collect_sdk_result(prompt), timeout=self.sdk_timeout,
            )
        except asyncio.TimeoutError:
            return SDKOutcome(
                SDKStatus.ERROR,
                error=InvocationTimeout(
                    f"SDK timed out after {self.sdk_timeout:g}s",
                    timeout=self.sdk_timeout, component="sdk",
                ),
            )
        except Exception as exc:
            return SDKOutcome(SDKStatus.ERROR, error=exc)

        if not text or not text.strip():
            return SDKOutcome(SDKStatus.EMPTY)
        return SDKOutcome(SDKStatus.SUCCESS, text=text)

    async def _collect_sdk_result(self, prompt: str) -> str:
        """Drain the SDK message stream, keeping only the result message."""
        result = ""
        stream = self.sdk(prompt=prompt, options=self._sdk_options())
        async with aclosing(stream):
            async for message in stream:
                if not _is_result_message(message):
                    continue
                if _field(message, "is_error"):
                    raise InvocationFault(
                        f"SDK reported an error: {_field(message, 'result') or 'unknown'}",
                        component="sdk",
                    )
                result = _field(message, "result") or ""
        return result

    def _sdk_options(self):
        if ClaudeAgentOptions is None:
            return None
        return ClaudeAgentOptions(max_turns=1)

    # -- CLI path --

    def _build_cli_args(self, prompt: str) -> list[str]:
        # Argument vector only: the prompt is never interpolated into a shell string.
        return [self.command, "-p", prompt, "--output-format", "json"]

    async def _invoke_cli(self, prompt: str) -> str:
        """Spawn the agent CLI, wait with a hard timeout, parse its output."""
        cmd = self._build_cli_args(prompt)

        env = os.environ.copy()
        for key in _NESTED_SESSION_VARS:
            env.pop(key, None)

        log.info("cli  cmd=%s  prompt=%d chars", self.command, len(prompt))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as exc:
            raise CommandNotFound(
                f"Agent command not found: {self.command}",
                component="cli", detail=str(exc),
            ) from exc
        except OSError as exc:
            raise InvocationFault(
                f"Could not start agent: {exc}", component="cli",
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.cli_timeout,
            )
        except asyncio.TimeoutError:
            await self._terminate(proc)
            raise InvocationTimeout(
                f"Timed out after {self.cli_timeout:g}s",
                timeout=self.cli_timeout, component="cli",
            ) from None
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise

        out = stdout.decode(errors="replace")
        err_text = stderr.decode(errors="replace").strip()

        if proc.returncode != 0:
            detail = err_text or out.strip()
            raise InvocationFault(
                f"Agent exited with code {proc.returncode}"
                + (f": {detail[:800]}" if detail else ""),
                returncode=proc.returncode, component="cli", detail=err_text,
            )

        text = parse_cli_output(out)
        if not text.strip():
            raise InvocationFault(
                "Agent returned no output", returncode=0,
                component="cli", detail=err_text,
            )
        return text

    async def _terminate(self, proc):
        """Graceful termination: SIGTERM first, SIGKILL fallback."""
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()


def parse_cli_output(raw: str) -> str:
    """Pull the reply text out of `--output-format json` stdout.

    Accepts {"result": ...}, {"response": ...}, a list of events containing a
    {"type": "result"} envelope, or the same events one per line. Anything
    that doesn't parse is returned as plain text.
    """
    stripped = raw.strip()
    if not stripped:
        return ""

    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        data = _parse_json_lines(stripped)
        if data is None:
            return stripped

    text = _extract_result(data)
    return stripped if text is None else text


def _parse_json_lines(text: str) -> list | None:
    events = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError:
            return None
    return events or None


def _extract_result(data) -> str | None:
    if isinstance(data, dict):
        for key in ("result", "response"):
            if isinstance(data.get(key), str):
                return data[key]
        return None
    if isinstance(data, list):
        for event in reversed(data):
            if isinstance(event, dict) and event.get("type") == "result":
                return _extract_result(event)
    return None


def _is_result_message(message) -> bool:
    if ResultMessage is not None and isinstance(message, ResultMessage):
        return True
    return _field(message, "type") == "result"


def _field(message, name: str):
    if isinstance(message, dict):
        return message.get(name)
    return getattr(message, name, None)


__all__ = [
    "AssistantInvoker",
    "AssistantReply",
    "InvocationError",
    "SDKOutcome",
    "SDKStatus",
    "parse_cli_output",
]
