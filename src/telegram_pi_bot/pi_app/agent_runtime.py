from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from telegram_pi_bot.pi_app.models import (
    ProcessExitedError,
    PromptResult,
    RpcCommandFailedError,
    RpcEvent,
    RpcResponse,
    TextUpdateCallback,
)
from telegram_pi_bot.pi_app.rpc_client import DEFAULT_STDIO_LIMIT, RpcClient, SpawnFn

logger = logging.getLogger(__name__)


class AgentRuntime(Protocol):
    """One live agent bound to one session file."""

    async def prompt(self, message: str, *, on_text_update: TextUpdateCallback | None = None) -> PromptResult: ...

    def is_alive(self) -> bool: ...

    async def dispose(self) -> None: ...


class RuntimeFactory(Protocol):
    """Creates the runtime used by a context for its active session file."""

    async def create(self, context_id: str, session_path: Path) -> AgentRuntime: ...


class PiProcessRuntime:
    """`AgentRuntime` backed by a `pi --mode rpc` process."""

    def __init__(self, rpc_client: RpcClient) -> None:
        self._rpc = rpc_client
        self._alive = True
        self._callback_tasks: set[asyncio.Future[object]] = set()
        self._rpc.on_exit(self._on_process_exit)

    @classmethod
    async def spawn(  # noqa: PLR0913
        cls,
        *,
        pi_bin: str,
        session_path: Path,
        cwd: Path | str,
        env: Mapping[str, str] | None = None,
        stdio_limit: int = DEFAULT_STDIO_LIMIT,
        spawner: SpawnFn | None = None,
    ) -> PiProcessRuntime:
        client = await RpcClient.spawn(
            pi_bin=pi_bin,
            session_path=session_path,
            cwd=cwd,
            env=env,
            stdio_limit=stdio_limit,
            spawner=spawner,
        )
        return cls(client)

    async def prompt(self, message: str, *, on_text_update: TextUpdateCallback | None = None) -> PromptResult:
        completion: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        streamed_text = ""

        def fail(error: BaseException) -> None:
            if not completion.done():
                completion.set_exception(error)

        def on_event(event: RpcEvent) -> None:
            nonlocal streamed_text
            try:
                delta = extract_text_delta(event)
                if delta is not None:
                    streamed_text += delta
                    if on_text_update is not None:
                        self._notify_text_update(on_text_update, streamed_text, fail)
                if event.get("type") == "agent_end" and not completion.done():
                    completion.set_result(None)
            except Exception as exc:  # noqa: BLE001
                fail(exc)

        def on_exit(code: int | None, signal_name: str | None) -> None:
            del code, signal_name
            fail(ProcessExitedError("RPC process exited while waiting for prompt completion"))

        # Subscribe before sending so events racing the response are not lost.
        unsubscribe = self._rpc.subscribe(on_event)
        remove_exit_listener = self._rpc.on_exit(on_exit)
        turn_open = False
        try:
            response = await self._rpc.request({"type": "prompt", "message": message})
            self._assert_success(response, "prompt")
            turn_open = True
            await completion
            turn_open = False
        finally:
            unsubscribe()
            remove_exit_listener()
            if completion.done() and not completion.cancelled():
                completion.exception()
            if turn_open:
                # The agent is still mid-turn; its late events must not leak into the next prompt.
                logger.warning("Prompt aborted before agent_end, retiring runtime")
                self._alive = False

        last_response = await self._rpc.request({"type": "get_last_assistant_text"})
        if not last_response.success:
            logger.warning(
                "get_last_assistant_text failed, using streamed text: error=%s",
                last_response.error,
            )
            return PromptResult(text=streamed_text)

        data = last_response.data if isinstance(last_response.data, dict) else {}
        final_text = data.get("text")
        return PromptResult(text=final_text if isinstance(final_text, str) else streamed_text)

    def is_alive(self) -> bool:
        return self._alive and self._rpc.is_alive()

    async def dispose(self) -> None:
        self._alive = False
        await self._rpc.dispose()

    def _on_process_exit(self, code: int | None, signal_name: str | None) -> None:
        logger.info("Agent process exited: code=%s signal=%s", code, signal_name)
        self._alive = False

    def _notify_text_update(
        self,
        callback: TextUpdateCallback,
        text: str,
        fail: Callable[[BaseException], None],
    ) -> None:
        result = callback(text)
        if not inspect.isawaitable(result):
            return

        task = asyncio.ensure_future(result)
        self._callback_tasks.add(task)

        def on_done(done: asyncio.Future[object]) -> None:
            self._callback_tasks.discard(done)
            if done.cancelled():
                return
            error = done.exception()
            if error is not None:
                fail(error)

        task.add_done_callback(on_done)

    @staticmethod
    def _assert_success(response: RpcResponse, command_name: str) -> None:
        if not response.success:
            raise RpcCommandFailedError(response.error or f"RPC command '{command_name}' failed")


@dataclass(slots=True, frozen=True)
class PiRuntimeFactory:
    """Spawns one `pi` process per context, bound to the context's active session file."""

    pi_bin: str
    cwd: Path
    env: Mapping[str, str] | None = None
    stdio_limit: int = DEFAULT_STDIO_LIMIT
    spawner: SpawnFn | None = None

    async def create(self, context_id: str, session_path: Path) -> PiProcessRuntime:
        logger.debug("Spawning agent process: context_id=%s pi_bin=%s", context_id, self.pi_bin)
        return await PiProcessRuntime.spawn(
            pi_bin=self.pi_bin,
            session_path=session_path,
            cwd=self.cwd,
            env=self.env,
            stdio_limit=self.stdio_limit,
            spawner=self.spawner,
        )


def extract_text_delta(event: RpcEvent) -> str | None:
    """Return the text delta carried by a `message_update` event, if any."""
    if event.get("type") != "message_update":
        return None

    assistant_event = event.get("assistantMessageEvent")
    if not isinstance(assistant_event, dict):
        return None
    if assistant_event.get("type") != "text_delta":
        return None

    delta = assistant_event.get("delta")
    return delta if isinstance(delta, str) else None
