"""Tests for AssistantInvoker: SDK attempt, CLI fallback, output parsing.

Uses a fake SDK query() and a fake subprocess: no real Claude calls.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from conftest import FakeProcess, cli_json, make_sdk, result_event
from relay.errors import (
    CommandNotFound,
    FailureKind,
    InvocationFault,
    InvocationTimeout,
)
from relay.runner import AssistantInvoker, SDKStatus, parse_cli_output


def make_invoker(sdk=None, **kw) -> AssistantInvoker:
    kw.setdefault("sdk_timeout", 1.0)
    kw.setdefault("cli_timeout", 1.0)
    kw.setdefault("kill_grace", 0.05)
    return AssistantInvoker(command="claude", sdk=sdk, **kw)


# -- SDK attempt outcomes --

class TestSDKAttempt:

    @pytest.mark.asyncio
    async def test_unavailable(self):
        outcome = await make_invoker(sdk=None)._attempt_sdk("hi")
        assert outcome.status is SDKStatus.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_success_reads_only_result_event(self):
        sdk = make_sdk(
            {"type": "system", "subtype": "init"},
            {"type": "assistant", "message": {"content": "thinking..."}},
            result_event("hello"),
        )
        outcome = await make_invoker(sdk=sdk)._attempt_sdk("hi")
        assert outcome.status is SDKStatus.SUCCESS
        assert outcome.text == "hello"
        assert sdk.calls == ["hi"]

    @pytest.mark.asyncio
    async def test_empty_result(self):
        outcome = await make_invoker(sdk=make_sdk(result_event("  \n")))._attempt_sdk("hi")
        assert outcome.status is SDKStatus.EMPTY

    @pytest.mark.asyncio
    async def test_no_result_event_is_empty(self):
        sdk = make_sdk({"type": "assistant", "message": {}})
        outcome = await make_invoker(sdk=sdk)._attempt_sdk("hi")
        assert outcome.status is SDKStatus.EMPTY

    @pytest.mark.asyncio
    async def test_exception_is_error(self):
        sdk = make_sdk(error=RuntimeError("sdk exploded"))
        outcome = await make_invoker(sdk=sdk)._attempt_sdk("hi")
        assert outcome.status is SDKStatus.ERROR
        assert "exploded" in str(outcome.error)

    @pytest.mark.asyncio
    async def test_error_result_is_error(self):
        sdk = make_sdk(result_event("overloaded", is_error=True))
        outcome = await make_invoker(sdk=sdk)._attempt_sdk("hi")
        assert outcome.status is SDKStatus.ERROR
        assert isinstance(outcome.error, InvocationFault)

    @pytest.mark.asyncio
    async def test_soft_timeout_is_error(self):
        sdk = make_sdk(result_event("late"), delay=5)
        outcome = await make_invoker(sdk=sdk, sdk_timeout=0.05)._attempt_sdk("hi")
        assert outcome.status is SDKStatus.ERROR
        assert isinstance(outcome.error, InvocationTimeout)


# -- Fallback policy --

class TestInvoke:

    @pytest.mark.asyncio
    async def test_sdk_success_skips_cli(self, spawn):
        reply = await make_invoker(sdk=make_sdk(result_event("hello"))).invoke("hi")
        assert reply.text == "hello"
        assert reply.source == "sdk"
        assert spawn.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sdk", [
        None,
        make_sdk(result_event("")),
        make_sdk(error=ConnectionError("nope")),
    ], ids=["unavailable", "empty", "error"])
    async def test_falls_back_to_cli(self, spawn, sdk):
        reply = await make_invoker(sdk=sdk).invoke("hi")
        assert reply.text == "from cli"
        assert reply.source == "cli"
        assert len(spawn.calls) == 1

    @pytest.mark.asyncio
    async def test_sdk_timeout_falls_back(self, spawn):
        sdk = make_sdk(result_event("late"), delay=5)
        reply = await make_invoker(sdk=sdk, sdk_timeout=0.05).invoke("hi")
        assert reply.source == "cli"


# -- CLI path --

class TestCLI:

    @pytest.mark.asyncio
    async def test_argument_vector(self, spawn):
        prompt = "fix it; rm -rf / && echo 'pwned'"
        invoker = make_invoker()
        await invoker.invoke(prompt)

        args = spawn.calls[0]
        assert list(args) == [invoker.command, "-p", prompt, "--output-format", "json"]
        assert spawn.kwargs[0]["stdin"] == asyncio.subprocess.DEVNULL
        assert spawn.kwargs[0]["stdout"] == asyncio.subprocess.PIPE
        assert spawn.kwargs[0]["stderr"] == asyncio.subprocess.PIPE
        assert "shell" not in spawn.kwargs[0]

    @pytest.mark.asyncio
    async def test_strips_nested_session_env(self, spawn, monkeypatch):
        monkeypatch.setenv("CLAUDECODE", "1")
        await make_invoker().invoke("hi")
        assert "CLAUDECODE" not in spawn.kwargs[0]["env"]

    @pytest.mark.asyncio
    async def test_unparseable_stdout_used_verbatim(self, spawn):
        spawn.next = FakeProcess(stdout="plain text answer\n")
        reply = await make_invoker().invoke("hi")
        assert reply.text == "plain text answer"

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_fault(self, spawn):
        spawn.next = FakeProcess(stdout="", stderr="auth failed", returncode=1)
        with pytest.raises(InvocationFault) as excinfo:
            await make_invoker().invoke("hi")
        assert excinfo.value.returncode == 1
        assert "auth failed" in str(excinfo.value)
        assert excinfo.value.kind is FailureKind.PROCESS_ERROR

    @pytest.mark.asyncio
    async def test_empty_output_is_fault(self, spawn):
        spawn.next = FakeProcess(stdout=json.dumps({"result": ""}))
        with pytest.raises(InvocationFault):
            await make_invoker().invoke("hi")

    @pytest.mark.asyncio
    async def test_missing_binary(self, spawn):
        spawn.next = FileNotFoundError(2, "No such file or directory")
        with pytest.raises(CommandNotFound) as excinfo:
            await make_invoker().invoke("hi")
        assert excinfo.value.kind is FailureKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_spawn_oserror(self, spawn):
        spawn.next = PermissionError(13, "Permission denied")
        with pytest.raises(InvocationFault):
            await make_invoker().invoke("hi")

    @pytest.mark.asyncio
    async def test_timeout_terminates_process(self, spawn):
        proc = FakeProcess(stdout=cli_json("never"), delay=5)
        spawn.next = proc
        with pytest.raises(InvocationTimeout) as excinfo:
            await make_invoker(cli_timeout=0.05).invoke("hi")
        assert proc.terminated
        assert not proc.killed
        assert excinfo.value.kind is FailureKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_timeout_kills_stubborn_process(self, spawn):
        proc = FakeProcess(stdout=cli_json("never"), delay=5, ignore_terminate=True)
        spawn.next = proc
        with pytest.raises(InvocationTimeout):
            await make_invoker(cli_timeout=0.05).invoke("hi")
        assert proc.terminated
        assert proc.killed
        assert proc.returncode == -9



class TestSDKStreamCleanup:

    @staticmethod
    def tracking_sdk(*messages, hang: bool = False):
        state = {"closed": False}

        async def query(prompt, options=None):
            try:
                for m in messages:
                    yield m
                if hang:
                    await asyncio.sleep(10)
            finally:
                state["closed"] = True

        return query, state

    @pytest.mark.asyncio
    async def test_stream_closed_on_error_result(self):
        sdk, state = self.tracking_sdk(
            result_event("boom", is_error=True), {"type": "system"},
        )
        outcome = await make_invoker(sdk=sdk)._attempt_sdk("hi")
        assert outcome.status is SDKStatus.ERROR
        assert state["closed"]

    @pytest.mark.asyncio
    async def test_stream_closed_on_timeout(self):
        sdk, state = self.tracking_sdk({"type": "system"}, hang=True)
        outcome = await make_invoker(sdk=sdk, sdk_timeout=0.05)._attempt_sdk("hi")
        assert outcome.status is SDKStatus.ERROR
        assert state["closed"]

# -- Output parsing --

class TestParseCliOutput:

    def test_result_field(self):
        assert parse_cli_output('{"result": "hi there"}') == "hi there"

    def test_response_field(self):
        assert parse_cli_output('{"response": "hi there"}') == "hi there"

    def test_result_envelope_in_list(self):
        raw = json.dumps([
            {"type": "system", "subtype": "init"},
            {"type": "assistant", "message": {}},
            {"type": "result", "result": "final"},
        ])
        assert parse_cli_output(raw) == "final"

    def test_result_envelope_in_json_lines(self):
        raw = "\n".join([
            json.dumps({"type": "system"}),
            json.dumps({"type": "result", "result": "final"}),
        ])
        assert parse_cli_output(raw) == "final"

    def test_unknown_json_shape_is_verbatim(self):
        assert parse_cli_output('{"foo": 1}') == '{"foo": 1}'

    def test_plain_text(self):
        assert parse_cli_output("  just text \n") == "just text"

    def test_empty(self):
        assert parse_cli_output("   ") == ""
