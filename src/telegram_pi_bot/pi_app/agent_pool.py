from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from telegram_pi_bot.core.context_key import SupergroupTopicKey, parse_supergroup_topic_context_key
from telegram_pi_bot.core.serial_queue import SerialQueue
from telegram_pi_bot.pi_app.agent_runtime import AgentRuntime, RuntimeFactory
from telegram_pi_bot.pi_app.models import (
    PromptResult,
    SessionDeleteResult,
    SessionOverview,
    SessionSwitchResult,
    TextUpdateCallback,
    TopicBinding,
)
from telegram_pi_bot.storage.session_paths import SessionPathManager

MIN_SWEEP_INTERVAL = 1.0
MAX_SWEEP_INTERVAL = 60.0
logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _RuntimeEntry:
    runtime: AgentRuntime
    last_used_at: float


class AgentPool:
    """One serial queue and at most one live runtime per context.

    Every per-context operation runs inside that context's queue, so prompts
    and session changes for the same context never interleave while different
    contexts proceed concurrently. Dead runtimes are replaced lazily on the next
    prompt; idle runtimes are disposed by the sweeper. Session files are only
    touched by explicit session operations.
    """

    def __init__(
        self,
        *,
        idle_ttl: float,
        runtime_factory: RuntimeFactory,
        session_paths: SessionPathManager,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if idle_ttl < 0:
            raise ValueError(idle_ttl)
        self._idle_ttl = idle_ttl
        self._runtime_factory = runtime_factory
        self._session_paths = session_paths
        self._clock = clock
        self._queues: dict[str, SerialQueue] = {}
        self._entries: dict[str, _RuntimeEntry] = {}
        self._sweep_interval = max(MIN_SWEEP_INTERVAL, min(MAX_SWEEP_INTERVAL, idle_ttl))
        self._sweep_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def sweep_interval(self) -> float:
        return self._sweep_interval

    def start(self) -> None:
        """Start the idle sweeper on the running loop; no-op if it is already running."""
        if self._closed:
            return
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def run_prompt(
        self,
        context_id: str,
        message: str,
        *,
        on_text_update: TextUpdateCallback | None = None,
    ) -> PromptResult:
        async def task() -> PromptResult:
            entry = await self._get_or_create_entry(context_id)
            entry.last_used_at = self._clock()
            try:
                return await entry.runtime.prompt(message, on_text_update=on_text_update)
            finally:
                entry.last_used_at = self._clock()

        return await self._get_queue(context_id).enqueue(task)

    async def reset(self, context_id: str) -> None:
        await self.create_session(context_id)

    async def get_session_overview(self, context_id: str) -> SessionOverview:
        async def task() -> SessionOverview:
            state = self._session_paths.get_session_state(context_id)
            return SessionOverview(active_session=state.active_file_name, sessions=state.session_file_names)

        return await self._get_queue(context_id).enqueue(task)

    async def create_session(self, context_id: str) -> SessionSwitchResult:
        async def task() -> SessionSwitchResult:
            rotated = self._session_paths.rotate_session(context_id)
            await self._dispose_entry(context_id)
            result = SessionSwitchResult(
                previous_session=rotated.previous_path.name,
                next_session=rotated.next_path.name,
            )
            logger.info(
                "Session rotated: context_id=%s previous=%s next=%s",
                context_id,
                result.previous_session,
                result.next_session,
            )
            return result

        return await self._get_queue(context_id).enqueue(task)

    async def switch_session(self, context_id: str, session_file_name: str) -> SessionSwitchResult:
        async def task() -> SessionSwitchResult:
            switched = self._session_paths.switch_session(context_id, session_file_name)
            result = SessionSwitchResult(
                previous_session=switched.previous_path.name,
                next_session=switched.next_path.name,
            )
            if switched.previous_path != switched.next_path:
                await self._dispose_entry(context_id)
                logger.info(
                    "Session switched: context_id=%s previous=%s next=%s",
                    context_id,
                    result.previous_session,
                    result.next_session,
                )
            return result

        return await self._get_queue(context_id).enqueue(task)

    async def delete_session(self, context_id: str, session_file_name: str) -> SessionDeleteResult:
        async def task() -> SessionDeleteResult:
            deleted = self._session_paths.delete_session(context_id, session_file_name)
            if deleted.was_active:
                await self._dispose_entry(context_id)

            result = SessionDeleteResult(
                deleted_session=deleted.deleted_path.name,
                was_active=deleted.was_active,
                previous_active_session=deleted.previous_active_path.name,
                active_session=deleted.next_active_path.name,
                remaining_sessions=deleted.remaining_session_file_names,
            )
            logger.info(
                "Session deleted: context_id=%s deleted=%s was_active=%s active=%s remaining=%s",
                context_id,
                result.deleted_session,
                result.was_active,
                result.active_session,
                len(result.remaining_sessions),
            )
            return result

        return await self._get_queue(context_id).enqueue(task)

    async def delete_context(self, context_id: str) -> None:
        async def task() -> None:
            await self._dispose_entry(context_id)
            self._session_paths.delete_context(context_id)
            logger.info("Context deleted: context_id=%s", context_id)

        await self._get_queue(context_id).enqueue(task)

    async def list_supergroup_topic_bindings(self, chat_id: int | str) -> list[TopicBinding]:
        target_chat_id = str(chat_id)
        bindings: list[TopicBinding] = []
        for context_id in self._session_paths.list_context_ids():
            key = parse_supergroup_topic_context_key(context_id)
            if key is None or key.chat_id != target_chat_id:
                continue
            binding = await self._get_queue(context_id).enqueue(self._topic_binding_task(context_id, key))
            if binding is None:
                self._drop_queue_if_unused(context_id)
                continue
            bindings.append(binding)

        return sorted(bindings, key=_topic_sort_key)

    async def sweep_idle(self, now: float | None = None) -> None:
        current = self._clock() if now is None else now
        for context_id, entry in list(self._entries.items()):
            queue = self._queues.get(context_id)
            if queue is not None and not queue.is_idle():
                continue
            if current - entry.last_used_at < self._idle_ttl:
                continue

            # Disposal runs in the context queue; a prompt queued meanwhile waits for the old process to exit.
            queue = self._get_queue(context_id)
            await queue.enqueue(self._sweep_entry_task(context_id, entry, current))
            self._drop_queue_if_unused(context_id)

    async def dispose(self) -> None:
        self._closed = True
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

        for context_id in list(self._entries):
            await self._dispose_entry(context_id)
        self._queues.clear()

    def _get_queue(self, context_id: str) -> SerialQueue:
        self.start()
        queue = self._queues.get(context_id)
        if queue is None:
            queue = SerialQueue()
            self._queues[context_id] = queue
        return queue

    async def _get_or_create_entry(self, context_id: str) -> _RuntimeEntry:
        existing = self._entries.get(context_id)
        if existing is not None:
            if existing.runtime.is_alive():
                return existing
            logger.info("Runtime is not alive, recreating: context_id=%s", context_id)
            await self._dispose_entry(context_id)

        session_path = self._session_paths.get_active_session_path(context_id)
        runtime = await self._runtime_factory.create(context_id, session_path)
        entry = _RuntimeEntry(runtime=runtime, last_used_at=self._clock())
        self._entries[context_id] = entry
        logger.info("Runtime created: context_id=%s session_path=%s", context_id, session_path)
        return entry

    async def _dispose_entry(self, context_id: str) -> None:
        entry = self._entries.pop(context_id, None)
        if entry is None:
            return
        await entry.runtime.dispose()
        logger.info("Runtime disposed: context_id=%s", context_id)

    def _sweep_entry_task(self, context_id: str, entry: _RuntimeEntry, now: float) -> Callable[[], Awaitable[None]]:
        async def task() -> None:
            if self._entries.get(context_id) is not entry:
                return
            inactive_for = now - entry.last_used_at
            if inactive_for < self._idle_ttl:
                return
            await self._dispose_entry(context_id)
            logger.info("Runtime swept: context_id=%s inactive_for=%.1fs", context_id, inactive_for)

        return task

    def _topic_binding_task(
        self,
        context_id: str,
        key: SupergroupTopicKey,
    ) -> Callable[[], Awaitable[TopicBinding | None]]:
        async def task() -> TopicBinding | None:
            # The context may have been deleted by an operation queued ahead of this one.
            if not self._session_paths.has_context(context_id):
                return None
            state = self._session_paths.get_session_state(context_id)
            return TopicBinding(
                context_id=context_id,
                chat_id=key.chat_id,
                message_thread_id=key.message_thread_id,
                active_session=state.active_file_name,
                session_count=len(state.session_file_names),
            )

        return task

    def _drop_queue_if_unused(self, context_id: str) -> None:
        queue = self._queues.get(context_id)
        if queue is not None and queue.is_idle() and context_id not in self._entries:
            del self._queues[context_id]

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep_idle()
            except Exception:
                logger.exception("Idle sweep failed")


def _topic_sort_key(binding: TopicBinding) -> tuple[int, int]:
    if binding.message_thread_id is None:
        return (0, 0)
    return (1, binding.message_thread_id)
