from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from telegram_pi_bot.pi_app.models import ClientDisposedError, ProcessExitedError
from telegram_pi_bot.pi_app.rpc_client import ClientState, RpcClient

EXIT_CODE = 3

Responder = Callable[["FakeProcess", dict[str, object]], None]


class FakeStdin:
    def __init__(self, process: FakeProcess, responder: Responder | None) -> None:
        self._process = process
        self._responder = responder
        self.lines: list[dict[str, object]] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("stdin closed")
        payload = json.loads(data.decode("utf-8"))
        self.lines.append(payload)
        if self._responder is not None:
            self._responder(self._process, payload)

    async def drain(self) -> None:
        return None


class FakeProcess:
    def __init__(self, responder: Responder | None = None) -> None:
        self.stdin = FakeStdin(self, responder)
        self.stdout = asyncio.StreamReader()
        self.returncode: int | None = None
        self.terminated = False
        self._exited = asyncio.Event()

    def emit(self, payload: dict[str, object]) -> None:
        self.emit_raw((json.dumps(payload) + "\n").encode("utf-8"))

    def emit_raw(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def finish(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        self.finish(-15)

    def kill(self) -> None:
        self.finish(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


def echo_responder(process: FakeProcess, payload: dict[str, object]) -> None:
    process.emit(
        {
            "type": "response",
            "id": payload["id"],
            "command": payload["type"],
            "success": True,
            "data": {"echo": payload["id"]},
        }
    )


def test_requests_are_numbered_and_resolved_by_id() -> None:
    async def scenario() -> None:
        process = FakeProcess(echo_responder)
        client = RpcClient(process)

        first = await client.request({"type": "get_state"})
        second = await client.request({"type": "get_last_assistant_text"})

        assert [line["id"] for line in process.stdin.lines] == ["req-0", "req-1"]
        assert first.data == {"echo": "req-0"}
        assert second.command == "get_last_assistant_text"
        assert second.success
        await client.dispose()

    asyncio.run(scenario())


def test_unknown_response_ids_are_ignored() -> None:
    async def scenario() -> None:
        process = FakeProcess()
        client = RpcClient(process)

        pending = asyncio.create_task(client.request({"type": "prompt", "message": "hi"}))
        await asyncio.sleep(0)
        process.emit({"type": "response", "id": "req-99", "command": "prompt", "success": False})
        process.emit({"type": "response", "id": "req-0", "command": "prompt", "success": True})

        response = await pending
        assert response.id == "req-0"
        assert response.success
        await client.dispose()

    asyncio.run(scenario())


def test_malformed_lines_are_dropped_and_events_broadcast() -> None:
    async def scenario() -> None:
        process = FakeProcess()
        client = RpcClient(process)
        received: list[dict[str, object]] = []
        got_event = asyncio.Event()

        def listener(event: dict[str, object]) -> None:
            received.append(event)
            got_event.set()

        client.subscribe(listener)
        process.emit_raw(b"not json\n")
        process.emit_raw(b"[1, 2]\n")
        process.emit_raw(b"\n")
        process.emit({"type": "agent_start"})

        await asyncio.wait_for(got_event.wait(), timeout=1)
        assert received == [{"type": "agent_start"}]
        assert client.is_alive()
        await client.dispose()

    asyncio.run(scenario())


def test_unsubscribing_during_dispatch_applies_to_next_event() -> None:
    async def scenario() -> None:
        process = FakeProcess()
        client = RpcClient(process)
        late: list[str] = []
        observed: list[str] = []
        both_seen = asyncio.Event()

        def late_listener(event: dict[str, object]) -> None:
            late.append(str(event["type"]))

        def observer(event: dict[str, object]) -> None:
            observed.append(str(event["type"]))
            if len(observed) == 2:  # noqa: PLR2004
                both_seen.set()

        remove_late = client.subscribe(late_listener)

        def unsubscriber(event: dict[str, object]) -> None:
            del event
            remove_late()

        client.subscribe(unsubscriber)
        client.subscribe(observer)
        process.emit({"type": "first"})
        process.emit({"type": "second"})

        await asyncio.wait_for(both_seen.wait(), timeout=1)
        assert late == ["first"]
        assert observed == ["first", "second"]
        await client.dispose()

    asyncio.run(scenario())


def test_failing_listener_is_logged_and_others_still_run(caplog: pytest.LogCaptureFixture) -> None:
    async def scenario() -> list[dict[str, object]]:
        process = FakeProcess()
        client = RpcClient(process)
        received: list[dict[str, object]] = []
        got_event = asyncio.Event()

        def broken(event: dict[str, object]) -> None:
            raise RuntimeError(event["type"])

        def healthy(event: dict[str, object]) -> None:
            received.append(event)
            got_event.set()

        client.subscribe(broken)
        client.subscribe(healthy)
        process.emit({"type": "agent_start"})

        await asyncio.wait_for(got_event.wait(), timeout=1)
        await client.dispose()
        return received

    with caplog.at_level(logging.ERROR, logger="telegram_pi_bot.pi_app.rpc_client"):
        received = asyncio.run(scenario())

    assert received == [{"type": "agent_start"}]
    assert "RPC event listener failed" in caplog.text


def test_process_exit_rejects_pending_requests_and_notifies_once() -> None:
    async def scenario() -> None:
        process = FakeProcess()
        client = RpcClient(process)
        exits: list[tuple[int | None, str | None]] = []
        client.on_exit(lambda code, signal_name: exits.append((code, signal_name)))

        pending = asyncio.create_task(client.request({"type": "prompt", "message": "hi"}))
        await asyncio.sleep(0)
        process.finish(EXIT_CODE)

        with pytest.raises(ProcessExitedError, match="code=3"):
            await pending
        assert exits == [(EXIT_CODE, None)]
        assert client.state is ClientState.EXITED
        assert not client.is_alive()

        with pytest.raises(ProcessExitedError):
            await client.request({"type": "get_state"})

        await client.dispose()
        assert client.state is ClientState.DISPOSED
        assert exits == [(EXIT_CODE, None)]
        assert not process.terminated

    asyncio.run(scenario())


def test_exit_by_signal_reports_signal_name() -> None:
    async def scenario() -> list[tuple[int | None, str | None]]:
        process = FakeProcess()
        client = RpcClient(process)
        exited = asyncio.Event()
        exits: list[tuple[int | None, str | None]] = []

        def on_exit(code: int | None, signal_name: str | None) -> None:
            exits.append((code, signal_name))
            exited.set()

        client.on_exit(on_exit)
        process.finish(-9)
        await asyncio.wait_for(exited.wait(), timeout=1)
        await client.dispose()
        return exits

    assert asyncio.run(scenario()) == [(None, "SIGKILL")]


def test_dispose_rejects_pending_requests_and_is_idempotent() -> None:
    async def scenario() -> None:
        process = FakeProcess()
        client = RpcClient(process)

        pending = asyncio.create_task(client.request({"type": "prompt", "message": "hi"}))
        await asyncio.sleep(0)
        await client.dispose()

        with pytest.raises(ClientDisposedError):
            await pending
        assert process.terminated
        assert client.state is ClientState.DISPOSED

        await client.dispose()
        with pytest.raises(ClientDisposedError):
            await client.request({"type": "get_state"})

    asyncio.run(scenario())


def test_closed_stdin_raises_process_exited() -> None:
    async def scenario() -> None:
        process = FakeProcess()
        process.stdin.closed = True
        client = RpcClient(process)

        with pytest.raises(ProcessExitedError, match="stdin closed"):
            await client.request({"type": "get_state"})
        await client.dispose()

    asyncio.run(scenario())


def test_spawn_passes_rpc_arguments_to_spawner(tmp_path: Path) -> None:
    calls: list[tuple[tuple[str, ...], dict[str, object]]] = []

    async def scenario() -> None:
        process = FakeProcess()

        async def fake_spawner(program: str, *args: str, **kwargs: object) -> FakeProcess:
            calls.append(((program, *args), kwargs))
            return process

        client = await RpcClient.spawn(
            pi_bin="pi",
            session_path=tmp_path / "session.jsonl",
            cwd=tmp_path,
            stdio_limit=1024,
            spawner=fake_spawner,
        )
        assert client.is_alive()
        await client.dispose()

    asyncio.run(scenario())

    (argv, kwargs) = calls[0]
    assert argv == ("pi", "--mode", "rpc", "--session", str(tmp_path / "session.jsonl"))
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["limit"] == 1024  # noqa: PLR2004
    assert kwargs["env"] is None


def test_rpc_client_requires_pipes() -> None:
    async def scenario() -> None:
        process = FakeProcess()
        process.stdout = None  # type: ignore[assignment]
        with pytest.raises(RuntimeError, match="piped stdin/stdout"):
            RpcClient(process)

    asyncio.run(scenario())


FAKE_PI_EXITING = """\
import json
import sys

while True:
    line = sys.stdin.readline()
    if not line:
        break
    request = json.loads(line)
    if request["type"] == "exit":
        sys.exit(4)
    print(json.dumps({"type": "response", "id": request["id"], "command": request["type"], "success": True}), flush=True)
"""


@pytest.mark.skipif(sys.platform == "win32", reason="uses a shebang script as the agent binary")
def test_real_process_exit_is_reported(tmp_path: Path) -> None:
    script = tmp_path / "fake-pi"
    script.write_text(f"#!{sys.executable}\n{FAKE_PI_EXITING}", encoding="utf-8")
    script.chmod(0o755)

    async def scenario() -> None:
        client = await RpcClient.spawn(pi_bin=str(script), session_path=tmp_path / "s.jsonl", cwd=tmp_path)

        response = await client.request({"type": "get_state"})
        assert response.success
        with pytest.raises(ProcessExitedError, match="code=4"):
            await client.request({"type": "exit"})
        assert client.state is ClientState.EXITED
        await client.dispose()

    asyncio.run(scenario())
