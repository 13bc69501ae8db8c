from __future__ import annotations

import asyncio
import asyncio.subprocess as aio_subprocess
import json
import logging
import signal
from collections.abc import Callable, Mapping
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from telegram_pi_bot.pi_app.models import ClientDisposedError, ProcessExitedError, RpcEvent, RpcResponse

DEFAULT_STDIO_LIMIT = 8_388_608
DEFAULT_SHUTDOWN_TIMEOUT = 3.0
logger = logging.getLogger(__name__)

EventListener = Callable[[RpcEvent], None]
ExitListener = Callable[[int | None, str | None], None]


class SpawnFn(Protocol):
    """Spawner protocol for agent subprocesses."""

    async def __call__(self, program: str, *args: str, **kwargs: object) -> asyncio.subprocess.Process: ...


class StdinLike(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


class StdoutLike(Protocol):
    async def readline(self) -> bytes: ...


class ProcessLike(Protocol):
    """Subset of the subprocess API used by the RPC client."""

    stdin: StdinLike | None
    stdout: StdoutLike | None
    returncode: int | None

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


class ClientState(Enum):
    ALIVE = "alive"
    EXITED = "exited"
    DISPOSED = "disposed"


class RpcClient:
    """Line-delimited JSON RPC over the stdin/stdout of one agent process.

    Requests get a `req-<n>` id and resolve when a `response` line with the
    same id arrives. Every other JSON object read from stdout is an event and
    is broadcast to the subscribers registered at that moment.
    """

    def __init__(self, process: ProcessLike, *, shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        if process.stdin is None or process.stdout is None:
            raise RuntimeError("agent process must be spawned with piped stdin/stdout")
        self._process = process
        self._stdin = process.stdin
        self._stdout = process.stdout
        self._shutdown_timeout = shutdown_timeout
        self._state = ClientState.ALIVE
        self._pending: dict[str, asyncio.Future[RpcResponse]] = {}
        self._event_listeners: set[EventListener] = set()
        self._exit_listeners: set[ExitListener] = set()
        self._request_counter = 0
        self._exit_error: ProcessExitedError | None = None
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    @classmethod
    async def spawn(  # noqa: PLR0913
        cls,
        *,
        pi_bin: str,
        session_path: Path | str,
        cwd: Path | str,
        env: Mapping[str, str] | None = None,
        stdio_limit: int = DEFAULT_STDIO_LIMIT,
        spawner: SpawnFn | None = None,
    ) -> RpcClient:
        spawn = spawner or cast(SpawnFn, asyncio.create_subprocess_exec)
        process = await spawn(
            pi_bin,
            "--mode",
            "rpc",
            "--session",
            str(session_path),
            stdin=aio_subprocess.PIPE,
            stdout=aio_subprocess.PIPE,
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
            limit=stdio_limit,
        )
        return cls(cast(ProcessLike, process))

    @property
    def state(self) -> ClientState:
        return self._state

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._event_listeners.add(listener)
        return lambda: self._event_listeners.discard(listener)

    def on_exit(self, listener: ExitListener) -> Callable[[], None]:
        self._exit_listeners.add(listener)
        return lambda: self._exit_listeners.discard(listener)

    async def request(self, payload: Mapping[str, object]) -> RpcResponse:
        if self._state is ClientState.DISPOSED:
            raise ClientDisposedError("RPC client is disposed")
        if self._exit_error is not None:
            raise ProcessExitedError(str(self._exit_error))

        request_id = f"req-{self._request_counter}"
        self._request_counter += 1
        future: asyncio.Future[RpcResponse] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        line = json.dumps({**payload, "id": request_id}, ensure_ascii=False) + "\n"
        try:
            self._stdin.write(line.encode("utf-8"))
            await self._stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            if future.done():
                return await future
            self._pending.pop(request_id, None)
            raise ProcessExitedError(f"RPC process stdin closed: {exc}") from exc

        return await future

    def is_alive(self) -> bool:
        return self._state is ClientState.ALIVE

    async def dispose(self) -> None:
        if self._state is ClientState.DISPOSED:
            return

        was_alive = self._state is ClientState.ALIVE
        self._state = ClientState.DISPOSED
        self._reject_all_pending(ClientDisposedError("RPC client disposed"))
        if was_alive:
            await self._shutdown()
        await self._reader

    async def _shutdown(self) -> None:
        if self._process.returncode is not None:
            return

        try:
            self._process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self._process.wait(), timeout=self._shutdown_timeout)
        except TimeoutError:
            self._process.kill()
            await self._process.wait()

    async def _read_loop(self) -> None:
        while True:
            try:
                raw = await self._stdout.readline()
            except ValueError:
                logger.warning("Dropping RPC output line longer than the stream limit")
                continue
            except OSError as exc:
                logger.warning("RPC output stream failed: %s", exc)
                break
            if not raw:
                break
            self._handle_line(raw)

        returncode = await self._process.wait()
        self._handle_exit(returncode)

    def _handle_line(self, raw: bytes) -> None:
        if self._state is ClientState.DISPOSED:
            return

        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            return
        if not isinstance(payload, dict):
            return

        if payload.get("type") == "response":
            request_id = payload.get("id")
            future = self._pending.pop(request_id, None) if isinstance(request_id, str) else None
            if future is not None and not future.done():
                future.set_result(RpcResponse.from_payload(payload))
            return

        for listener in tuple(self._event_listeners):
            try:
                listener(payload)
            except Exception:
                logger.exception("RPC event listener failed: event_type=%s", payload.get("type"))

    def _handle_exit(self, returncode: int | None) -> None:
        code, signal_name = _split_returncode(returncode)
        if self._state is ClientState.ALIVE:
            self._state = ClientState.EXITED
        self._exit_error = ProcessExitedError(f"RPC process exited (code={code}, signal={signal_name or 'none'})")
        self._reject_all_pending(self._exit_error)

        for listener in tuple(self._exit_listeners):
            try:
                listener(code, signal_name)
            except Exception:
                logger.exception("RPC exit listener failed")
        self._exit_listeners.clear()

    def _reject_all_pending(self, error: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)


def _split_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    if returncode is None or returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"signal {-returncode}"
