from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from telegram import Bot, Message, Update
from telegram.constants import ChatAction, ChatType, ParseMode
from telegram.error import TelegramError
from telegram.ext import AIORateLimiter, Application, CommandHandler, ContextTypes, MessageHandler, filters

from telegram_pi_bot.core.context_key import build_private_context_key, build_supergroup_topic_context_key
from telegram_pi_bot.pi_app.models import (
    InvalidIdentifierError,
    PromptResult,
    SessionDeleteResult,
    SessionNotFoundError,
    SessionOverview,
    SessionSwitchResult,
    TextUpdateCallback,
    TopicBinding,
)

TELEGRAM_SAFE_TEXT_LIMIT = 4000
DEFAULT_STREAM_EDIT_INTERVAL = 0.6
TYPING_REFRESH_INTERVAL = 4.0
SESSION_USAGE = "Usage: `/session [list|new|use <n>|delete <n>]`"
HELP_TEXT = (
    "Commands: /reset, /session list, /session new, /session use <n>, /session delete <n>, /help\n"
    "In forum supergroups every topic is its own conversation."
)
logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class BotConfig:
    """Runtime settings for Telegram transport."""

    token: str
    allowed_user_ids: set[int]
    stream_edit_interval: float = DEFAULT_STREAM_EDIT_INTERVAL


class ChatRequiredError(ValueError):
    """Raised when a Telegram update does not include a chat object."""


@dataclass(slots=True, frozen=True)
class ChatRoute:
    """Conversation context an incoming update belongs to."""

    context_id: str
    chat_id: int
    is_supergroup: bool
    message_thread_id: int | None = None


@dataclass(slots=True)
class _StreamingRenderState:
    source_message: Message
    text_message: Message | None = None
    rendered_text: str = ""
    last_render_at: float | None = None
    finished: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class PromptPool(Protocol):
    """Pool interface expected by Telegram handlers."""

    async def run_prompt(
        self,
        context_id: str,
        message: str,
        *,
        on_text_update: TextUpdateCallback | None = None,
    ) -> PromptResult: ...

    async def reset(self, context_id: str) -> None: ...

    async def get_session_overview(self, context_id: str) -> SessionOverview: ...

    async def create_session(self, context_id: str) -> SessionSwitchResult: ...

    async def switch_session(self, context_id: str, session_file_name: str) -> SessionSwitchResult: ...

    async def delete_session(self, context_id: str, session_file_name: str) -> SessionDeleteResult: ...

    async def delete_context(self, context_id: str) -> None: ...

    async def list_supergroup_topic_bindings(self, chat_id: int | str) -> list[TopicBinding]: ...

    def start(self) -> None: ...

    async def dispose(self) -> None: ...


class TelegramBridge:
    """Telegram command and message handlers routing chats and forum topics to the agent pool."""

    def __init__(self, config: BotConfig, pool: PromptPool, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._pool = pool
        self._clock = clock
        self._app: Application | None = None

    def install(self, app: Application) -> None:
        self._app = app
        app.add_handler(CommandHandler("start", self.start))
        app.add_handler(CommandHandler("help", self.help))
        app.add_handler(CommandHandler("reset", self.reset))
        app.add_handler(CommandHandler("session", self.session))
        app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.on_message))

    async def on_startup(self, app: Application) -> None:
        del app
        self._pool.start()

    async def on_shutdown(self, app: Application) -> None:
        del app
        await self._pool.dispose()

    async def start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        del context
        if self._route(update) is None:
            return
        await self._reply(update, "Send a message to talk to the agent. Use /help to list commands.")

    async def help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        del context
        if self._route(update) is None:
            return
        await self._reply(update, HELP_TEXT)

    async def reset(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        del context
        route = self._route(update)
        if route is None:
            return

        await self._pool.reset(route.context_id)
        logger.info("Session reset: context_id=%s", route.context_id)
        await self._reply(update, "Session reset. The previous conversation is kept, see /session list.")

    async def session(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        route = self._route(update)
        if route is None:
            return

        args = self._context_args(context)
        action = args[0].strip().lower() if args else "list"
        target = args[1].strip() if len(args) > 1 else ""
        if route.is_supergroup:
            await self._topic_session_command(update, context, route, action, args[1:])
            return

        if action == "list":
            overview = await self._pool.get_session_overview(route.context_id)
            await self._reply(update, self._format_overview(overview))
        elif action == "new":
            created = await self._pool.create_session(route.context_id)
            await self._reply(update, f"New session started: `{created.next_session}`")
        elif action == "use" and target:
            await self._switch_session(update, route, target)
        elif action == "delete" and target:
            await self._delete_session(update, route, target)
        else:
            await self._reply(update, SESSION_USAGE)

    async def on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        route = self._route(update)
        message = update.message
        if route is None or message is None:
            return

        text = (message.text or "").strip()
        if not text:
            return

        logger.info("Incoming message: context_id=%s length=%s", route.context_id, len(text))
        await self._send_typing(context.bot, route)
        typing_task = asyncio.create_task(self._keep_typing(context.bot, route))
        state = _StreamingRenderState(source_message=message)

        async def on_text_update(streamed_text: str) -> None:
            await self._render_stream_text(state, streamed_text)

        try:
            result = await self._pool.run_prompt(route.context_id, text, on_text_update=on_text_update)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Message handling failed: context_id=%s error=%s", route.context_id, exc)
            await self._finalize_text(state, f"Request failed: {exc}")
            return
        finally:
            typing_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await typing_task

        await self._finalize_text(state, result.text)
        logger.info("Message handled: context_id=%s response_length=%s", route.context_id, len(result.text))

    async def _topic_session_command(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
        route: ChatRoute,
        action: str,
        rest: list[str],
    ) -> None:
        if action == "list":
            bindings = await self._pool.list_supergroup_topic_bindings(route.chat_id)
            await self._reply(update, self._format_bindings(bindings, current=route.context_id))
        elif action == "new":
            await self._create_topic_session(update, context, route, " ".join(rest).strip())
        elif action == "use":
            await self._reply(
                update,
                "/session use is disabled in supergroups: every topic keeps its own session. "
                "Use /session new to open another topic.",
            )
        elif action == "delete":
            await self._delete_topic_session(update, context, route)
        else:
            await self._reply(update, SESSION_USAGE)

    async def _create_topic_session(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
        route: ChatRoute,
        name: str,
    ) -> None:
        topic_name = name or f"pi {datetime.now().strftime('%Y-%m-%d %H:%M')}"
        try:
            topic = await context.bot.create_forum_topic(chat_id=route.chat_id, name=topic_name)
        except TelegramError as exc:
            logger.warning("Topic creation failed: chat_id=%s error=%s", route.chat_id, exc)
            await self._reply(update, f"Failed to create topic: {exc}")
            return

        thread_id = topic.message_thread_id
        context_id = build_supergroup_topic_context_key(route.chat_id, thread_id)
        overview = await self._pool.get_session_overview(context_id)
        logger.info("Topic session created: context_id=%s session=%s", context_id, overview.active_session)
        await self._reply(update, f"New topic session `{topic_name}`: {self._topic_link(route.chat_id, thread_id)}")

    async def _delete_topic_session(self, update: Update, context: ContextTypes.DEFAULT_TYPE, route: ChatRoute) -> None:
        if route.message_thread_id is None:
            await self._reply(update, "The General topic cannot be deleted. Use /reset to start over.")
            return

        try:
            await context.bot.delete_forum_topic(chat_id=route.chat_id, message_thread_id=route.message_thread_id)
        except TelegramError as exc:
            logger.warning("Topic deletion failed: context_id=%s error=%s", route.context_id, exc)
            await self._reply(update, f"Failed to delete topic: {exc}. The operation was rolled back.")
            return

        await self._pool.delete_context(route.context_id)
        logger.info("Topic session deleted: context_id=%s", route.context_id)

    async def _switch_session(self, update: Update, route: ChatRoute, target: str) -> None:
        overview = await self._pool.get_session_overview(route.context_id)
        session_name = self._resolve_session_ref(target, overview.sessions)
        if session_name is None:
            await self._reply(update, f"Session not found: `{target}`")
            return
        try:
            switched = await self._pool.switch_session(route.context_id, session_name)
        except (SessionNotFoundError, InvalidIdentifierError):
            await self._reply(update, f"Session not found: `{target}`")
            return

        if switched.previous_session == switched.next_session:
            await self._reply(update, f"Already using session `{switched.next_session}`.")
            return
        await self._reply(update, f"Session switched to `{switched.next_session}`.")

    async def _delete_session(self, update: Update, route: ChatRoute, target: str) -> None:
        overview = await self._pool.get_session_overview(route.context_id)
        session_name = self._resolve_session_ref(target, overview.sessions)
        if session_name is None:
            await self._reply(update, f"Session not found: `{target}`")
            return
        try:
            deleted = await self._pool.delete_session(route.context_id, session_name)
        except (SessionNotFoundError, InvalidIdentifierError):
            await self._reply(update, f"Session not found: `{target}`")
            return

        await self._reply(
            update,
            f"Deleted session `{deleted.deleted_session}`. Current session: `{deleted.active_session}`.",
        )

    async def _keep_typing(self, bot: Bot, route: ChatRoute) -> None:
        # Telegram drops the typing indicator after about five seconds.
        while True:
            await asyncio.sleep(TYPING_REFRESH_INTERVAL)
            await self._send_typing(bot, route)

    @staticmethod
    async def _send_typing(bot: Bot, route: ChatRoute) -> None:
        try:
            await bot.send_chat_action(
                chat_id=route.chat_id,
                action=ChatAction.TYPING,
                message_thread_id=route.message_thread_id,
            )
        except TelegramError as exc:
            logger.debug("Typing action failed: chat_id=%s error=%s", route.chat_id, exc)

    async def _render_stream_text(self, state: _StreamingRenderState, text: str) -> None:
        now = self._clock()
        if state.last_render_at is not None and now - state.last_render_at < self._config.stream_edit_interval:
            return
        state.last_render_at = now

        preview = text[:TELEGRAM_SAFE_TEXT_LIMIT]
        if not preview.strip():
            return
        async with state.lock:
            if state.finished or preview == state.rendered_text:
                return
            if state.text_message is None:
                try:
                    state.text_message = await state.source_message.reply_text(preview)
                except TelegramError as exc:
                    logger.warning("Failed to send streamed preview: error=%s", exc)
                    return
            else:
                try:
                    await state.text_message.edit_text(preview)
                except TelegramError:
                    # Some clients reject no-op or transient edits; keep streaming forward.
                    return
            state.rendered_text = preview

    async def _finalize_text(self, state: _StreamingRenderState, text: str) -> None:
        chunks = self._split_text(text if text.strip() else "...")
        async with state.lock:
            state.finished = True
            if state.text_message is None:
                for chunk in chunks:
                    await self._reply_markdown(state.source_message, chunk)
                return

            first, *rest = chunks
            await self._edit_markdown(state.text_message, first, previous=state.rendered_text)
            state.rendered_text = first
            for chunk in rest:
                await self._reply_markdown(state.source_message, chunk)

    def _route(self, update: Update) -> ChatRoute | None:
        chat = update.effective_chat
        if chat is None:
            raise ChatRequiredError

        allowed = self._config.allowed_user_ids
        user_id = update.effective_user.id if update.effective_user else None
        if user_id not in allowed:
            logger.debug("Ignoring update from user outside allow-list: user_id=%s chat_id=%s", user_id, chat.id)
            return None

        if chat.type == ChatType.PRIVATE:
            return ChatRoute(context_id=build_private_context_key(chat.id), chat_id=chat.id, is_supergroup=False)
        if chat.type == ChatType.SUPERGROUP and getattr(chat, "is_forum", False):
            message = update.message
            thread_id = None
            if message is not None and getattr(message, "is_topic_message", False):
                thread_id = message.message_thread_id
            return ChatRoute(
                context_id=build_supergroup_topic_context_key(chat.id, thread_id),
                chat_id=chat.id,
                is_supergroup=True,
                message_thread_id=thread_id,
            )
        return None

    @staticmethod
    def _resolve_session_ref(ref: str, sessions: tuple[str, ...]) -> str | None:
        if ref.isascii() and ref.isdigit():
            index = int(ref)
            if 1 <= index <= len(sessions):
                return sessions[index - 1]
            return None
        return ref if ref in sessions else None

    @staticmethod
    def _format_overview(overview: SessionOverview) -> str:
        lines = [f"Current session: {overview.active_session}"]
        for index, name in enumerate(overview.sessions, start=1):
            marker = "[*] " if name == overview.active_session else ""
            lines.append(f"{index}) {marker}{name}")
        return "\n".join(lines)

    @staticmethod
    def _format_bindings(bindings: list[TopicBinding], *, current: str) -> str:
        if not bindings:
            return "No topic sessions in this group yet. Use /session new to create one."
        lines = ["Topic sessions:"]
        for binding in bindings:
            marker = "[*] " if binding.context_id == current else ""
            topic = "general" if binding.message_thread_id is None else str(binding.message_thread_id)
            lines.append(f"{marker}topic={topic} session={binding.active_session} ({binding.session_count} total)")
        return "\n".join(lines)

    @staticmethod
    def _topic_link(chat_id: int, message_thread_id: int) -> str:
        internal_id = str(chat_id).removeprefix("-100").lstrip("-")
        return f"https://t.me/c/{internal_id}/{message_thread_id}"

    @staticmethod
    def _context_args(context: ContextTypes.DEFAULT_TYPE) -> list[str]:
        args = context.args
        if not args:
            return []
        return list(args)

    @staticmethod
    def _split_text(text: str, *, limit: int = TELEGRAM_SAFE_TEXT_LIMIT) -> list[str]:
        if not text:
            return [""]
        chunks: list[str] = []
        pending = text
        while pending:
            if len(pending) <= limit:
                chunks.append(pending)
                break
            split_at = pending.rfind("\n", 0, limit)
            if split_at <= 0:
                split_at = limit
            chunks.append(pending[:split_at])
            pending = pending[split_at:]
        return chunks

    @staticmethod
    async def _reply(update: Update, text: str) -> None:
        if update.message is None:
            return
        for chunk in TelegramBridge._split_text(text):
            await TelegramBridge._reply_markdown(update.message, chunk)

    @staticmethod
    async def _reply_markdown(message: Message, text: str) -> Message:
        try:
            return await message.reply_text(text, parse_mode=ParseMode.MARKDOWN)
        except TelegramError:
            return await message.reply_text(text)

    @staticmethod
    async def _edit_markdown(message: Message, text: str, *, previous: str) -> None:
        try:
            await message.edit_text(text, parse_mode=ParseMode.MARKDOWN)
            return
        except TelegramError:
            pass
        if text == previous:
            return
        try:
            await message.edit_text(text)
        except TelegramError:
            logger.warning("Failed to edit streamed reply, sending it as a new message")
            await message.reply_text(text)


def build_application(config: BotConfig, bridge: TelegramBridge) -> Application:
    # Per-context ordering comes from the agent pool, so updates from different
    # chats and topics are handled concurrently.
    app = (
        Application.builder()
        .token(config.token)
        .concurrent_updates(True)
        .rate_limiter(AIORateLimiter())
        .post_init(bridge.on_startup)
        .post_shutdown(bridge.on_shutdown)
        .build()
    )
    bridge.install(app)
    return app


def run_polling(config: BotConfig, bridge: TelegramBridge) -> int:
    app = build_application(config, bridge)
    app.run_polling(allowed_updates=Update.ALL_TYPES)
    return 0


def make_config(
    *,
    token: str,
    allowed_user_ids: list[int],
    stream_edit_interval: float = DEFAULT_STREAM_EDIT_INTERVAL,
) -> BotConfig:
    return BotConfig(
        token=token,
        allowed_user_ids=set(allowed_user_ids),
        stream_edit_interval=stream_edit_interval,
    )
