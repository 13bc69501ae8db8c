from __future__ import annotations

import logging
import os
import secrets
import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from telegram_pi_bot.pi_app.models import InvalidIdentifierError, SessionNotFoundError

ACTIVE_POINTER_FILE = "active-session.txt"
SESSION_FILE_PREFIX = "session-"
SESSION_FILE_SUFFIX = ".jsonl"
logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SessionState:
    active_path: Path
    active_file_name: str
    session_file_names: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class SessionRotation:
    previous_path: Path
    next_path: Path


@dataclass(slots=True, frozen=True)
class SessionDeletion:
    deleted_path: Path
    was_active: bool
    previous_active_path: Path
    next_active_path: Path
    remaining_session_file_names: tuple[str, ...]


class SessionPathManager:
    """Durable mapping from a context id to its session files and active pointer.

    Layout::

        <sessions_dir>/<context_id>/active-session.txt
        <sessions_dir>/<context_id>/session-<timestamp>-<hex>.jsonl

    The manager only creates, points to and deletes session files; their
    contents belong to the agent process.
    """

    def __init__(self, sessions_dir: Path | str) -> None:
        self._sessions_dir = Path(sessions_dir).expanduser().resolve()

    @property
    def sessions_dir(self) -> Path:
        return self._sessions_dir

    def get_active_session_path(self, context_id: str) -> Path:
        context_dir = self._ensure_context_dir(context_id)
        pointer_path = context_dir / ACTIVE_POINTER_FILE

        file_name = self._read_pointer(pointer_path)
        if file_name is not None:
            session_path = context_dir / file_name
            if not session_path.exists():
                session_path.touch()
            return session_path

        session_path = self._create_session_file(context_dir)
        self._write_pointer(pointer_path, session_path)
        return session_path

    def get_session_state(self, context_id: str) -> SessionState:
        active_path = self.get_active_session_path(context_id)
        names = self._list_session_file_names(active_path.parent)
        if active_path.name not in names:
            names = sorted([*names, active_path.name], reverse=True)
        return SessionState(
            active_path=active_path,
            active_file_name=active_path.name,
            session_file_names=tuple(names),
        )

    def rotate_session(self, context_id: str) -> SessionRotation:
        previous_path = self.get_active_session_path(context_id)
        context_dir = previous_path.parent
        next_path = self._create_session_file(context_dir)
        self._write_pointer(context_dir / ACTIVE_POINTER_FILE, next_path)
        return SessionRotation(previous_path=previous_path, next_path=next_path)

    def switch_session(self, context_id: str, file_name: str) -> SessionRotation:
        safe_name = self._validate_session_file_name(file_name)
        previous_path = self.get_active_session_path(context_id)
        context_dir = previous_path.parent
        if safe_name not in self._list_session_file_names(context_dir):
            raise SessionNotFoundError(safe_name)

        next_path = context_dir / safe_name
        if next_path != previous_path:
            self._write_pointer(context_dir / ACTIVE_POINTER_FILE, next_path)
        return SessionRotation(previous_path=previous_path, next_path=next_path)

    def delete_session(self, context_id: str, file_name: str) -> SessionDeletion:
        safe_name = self._validate_session_file_name(file_name)
        previous_active_path = self.get_active_session_path(context_id)
        context_dir = previous_active_path.parent
        if safe_name not in self._list_session_file_names(context_dir):
            raise SessionNotFoundError(safe_name)

        deleted_path = context_dir / safe_name
        deleted_path.unlink()
        remaining = self._list_session_file_names(context_dir)
        was_active = deleted_path == previous_active_path

        next_active_path = previous_active_path
        if was_active:
            if remaining:
                next_active_path = context_dir / remaining[0]
            else:
                next_active_path = self._create_session_file(context_dir)
                remaining = [next_active_path.name]
            self._write_pointer(context_dir / ACTIVE_POINTER_FILE, next_active_path)

        return SessionDeletion(
            deleted_path=deleted_path,
            was_active=was_active,
            previous_active_path=previous_active_path,
            next_active_path=next_active_path,
            remaining_session_file_names=tuple(remaining),
        )

    def delete_context(self, context_id: str) -> None:
        context_dir = self._sessions_dir / self._validate_context_id(context_id)
        if context_dir.exists():
            shutil.rmtree(context_dir)

    def has_context(self, context_id: str) -> bool:
        """Return whether the context directory exists, without creating anything."""
        return (self._sessions_dir / self._validate_context_id(context_id)).is_dir()

    def list_context_ids(self) -> list[str]:
        if not self._sessions_dir.is_dir():
            return []
        return sorted(entry.name for entry in self._sessions_dir.iterdir() if entry.is_dir())

    def _ensure_context_dir(self, context_id: str) -> Path:
        context_dir = self._sessions_dir / self._validate_context_id(context_id)
        context_dir.mkdir(parents=True, exist_ok=True)
        return context_dir

    @staticmethod
    def _validate_context_id(context_id: str) -> str:
        safe_id = context_id.strip()
        if not safe_id:
            raise InvalidIdentifierError("context id cannot be empty")
        if safe_id in {".", ".."} or Path(safe_id).name != safe_id or "\\" in safe_id:
            raise InvalidIdentifierError(f"invalid context id: {context_id!r}")
        return safe_id

    @staticmethod
    def _validate_session_file_name(file_name: str) -> str:
        safe_name = file_name.strip()
        if not safe_name:
            raise InvalidIdentifierError("session file name cannot be empty")
        if Path(safe_name).name != safe_name or "\\" in safe_name or not _is_session_file_name(safe_name):
            raise InvalidIdentifierError(f"invalid session file name: {file_name!r}")
        return safe_name

    @staticmethod
    def _list_session_file_names(context_dir: Path) -> list[str]:
        names = [entry.name for entry in context_dir.iterdir() if entry.is_file() and _is_session_file_name(entry.name)]
        return sorted(names, reverse=True)

    @staticmethod
    def _read_pointer(pointer_path: Path) -> str | None:
        try:
            file_name = pointer_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        if not file_name:
            return None
        if Path(file_name).name != file_name or not _is_session_file_name(file_name):
            logger.warning("Ignoring invalid active session pointer: path=%s value=%r", pointer_path, file_name)
            return None
        return file_name

    @staticmethod
    def _write_pointer(pointer_path: Path, session_path: Path) -> None:
        temp_path = pointer_path.with_name(f".{pointer_path.name}.{secrets.token_hex(4)}.tmp")
        temp_path.write_text(f"{session_path.name}\n", encoding="utf-8")
        os.replace(temp_path, pointer_path)

    @staticmethod
    def _create_session_file(context_dir: Path) -> Path:
        session_path = context_dir / new_session_file_name()
        session_path.touch()
        return session_path


def new_session_file_name(now: datetime | None = None) -> str:
    """Return `session-<UTC ISO8601 with dashes>-<6 hex>.jsonl`, e.g. `session-2026-02-15T10-20-30.123Z-a1b2c3.jsonl`."""
    moment = (now or datetime.now(UTC)).astimezone(UTC)
    timestamp = moment.strftime("%Y-%m-%dT%H-%M-%S") + f".{moment.microsecond // 1000:03d}Z"
    return f"{SESSION_FILE_PREFIX}{timestamp}-{secrets.token_hex(3)}{SESSION_FILE_SUFFIX}"


def _is_session_file_name(name: str) -> bool:
    return name.startswith(SESSION_FILE_PREFIX) and name.endswith(SESSION_FILE_SUFFIX)
