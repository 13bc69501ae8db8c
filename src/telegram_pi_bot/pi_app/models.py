from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

TextUpdateCallback = Callable[[str], Awaitable[None] | None]
RpcEvent = dict[str, Any]


class InvalidIdentifierError(ValueError):
    """Raised when a context id or session file name is empty or path-unsafe."""


class SessionNotFoundError(LookupError):
    """Raised when a session file does not exist for the requested context."""


class RpcCommandFailedError(RuntimeError):
    """Raised when the agent answers a command with `success: false`."""


class ProcessExitedError(RuntimeError):
    """Raised when the agent process terminates while work is outstanding."""


class ClientDisposedError(RuntimeError):
    """Raised when an RPC client is used after it was disposed."""


@dataclass(slots=True, frozen=True)
class RpcResponse:
    """Response line sent by the agent for one request."""

    id: str
    command: str
    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RpcResponse:
        error = payload.get("error")
        return cls(
            id=str(payload.get("id", "")),
            command=str(payload.get("command", "")),
            success=payload.get("success") is True,
            data=payload.get("data"),
            error=error if isinstance(error, str) else None,
        )


@dataclass(slots=True, frozen=True)
class PromptResult:
    """Final assistant text for one prompt."""

    text: str


@dataclass(slots=True, frozen=True)
class SessionOverview:
    """Active session file name and every session file of one context, newest first."""

    active_session: str
    sessions: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class SessionSwitchResult:
    previous_session: str
    next_session: str


@dataclass(slots=True, frozen=True)
class SessionDeleteResult:
    deleted_session: str
    was_active: bool
    previous_active_session: str
    active_session: str
    remaining_sessions: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class TopicBinding:
    """Session state of one forum topic context inside a supergroup."""

    context_id: str
    chat_id: str
    message_thread_id: int | None
    active_session: str
    session_count: int
