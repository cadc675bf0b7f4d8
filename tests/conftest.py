"""Shared fakes for the relay tests."""

from __future__ import annotations

import asyncio
import json

import pytest


class FakeProcess:
    """Simulates an asyncio subprocess with controllable output and timing."""

    def __init__(
        self,
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        delay: float = 0.0,
        ignore_terminate: bool = False,
    ):
        self._stdout = stdout
        self._stderr = stderr
        self._delay = delay
        self._ignore_terminate = ignore_terminate
        self._exited = asyncio.Event()
        self.returncode = None
        self._final_rc = returncode
        self.terminated = False
        self.killed = False

    async def communicate(self, input=None):
        if self._delay:
            await asyncio.sleep(self._delay)
        self.returncode = self._final_rc
        self._exited.set()
        return self._stdout.encode(), self._stderr.encode()

    def terminate(self):
        self.terminated = True
        if not self._ignore_terminate:
            self.returncode = -15
            self._exited.set()

    def kill(self):
        self.killed = True
        self.returncode = -9
        self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode


class FakeChannel:
    """Records what the dispatcher sends back."""

    def __init__(self):
        self.replies: list[str] = []
        self.sent: list[str] = []

    async def reply(self, text: str) -> None:
        self.replies.append(text)

    async def send(self, text: str) -> None:
        self.sent.append(text)

    @property
    def all(self) -> list[str]:
        return self.replies + self.sent


def make_sdk(*messages, delay: float = 0.0, error: Exception | None = None):
    """Build a fake SDK query() yielding the given messages."""
    calls = []

    async def query(prompt, options=None):
        calls.append(prompt)
        if delay:
            await asyncio.sleep(delay)
        if error is not None:
            raise error
        for m in messages:
            yield m

    query.calls = calls
    return query


def result_event(text: str, **extra) -> dict:
    return {"type": "result", "result": text, **extra}


def cli_json(text: str) -> str:
    return json.dumps({"type": "result", "subtype": "success", "result": text})


@pytest.fixture
def spawn(monkeypatch):
    """Patch subprocess creation; returns a recorder with .calls and .procs."""

    class Spawner:
        def __init__(self):
            self.calls: list[tuple] = []
            self.kwargs: list[dict] = []
            self.procs: list[FakeProcess] = []
            self.next: FakeProcess | Exception = FakeProcess(stdout=cli_json("from cli"))

        async def __call__(self, *args, **kwargs):
            self.calls.append(args)
            self.kwargs.append(kwargs)
            if isinstance(self.next, Exception):
                raise self.next
            self.procs.append(self.next)
            return self.next

    spawner = Spawner()
    monkeypatch.setattr("relay.runner.asyncio.create_subprocess_exec", spawner)
    return spawner
