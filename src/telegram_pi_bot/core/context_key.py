from __future__ import annotations

from dataclasses import dataclass

SUPERGROUP_PREFIX = "supergroup-"
TOPIC_SEPARATOR = "-topic-"
GENERAL_TOPIC_ID = "general"


@dataclass(slots=True, frozen=True)
class SupergroupTopicKey:
    """Decoded supergroup topic context id. `message_thread_id` is None for the General topic."""

    chat_id: str
    message_thread_id: int | None


def build_private_context_key(chat_id: int | str) -> str:
    return str(chat_id)


def build_supergroup_topic_context_key(chat_id: int | str, message_thread_id: int | None) -> str:
    topic_id = GENERAL_TOPIC_ID if message_thread_id is None else str(message_thread_id)
    return f"{SUPERGROUP_PREFIX}{chat_id}{TOPIC_SEPARATOR}{topic_id}"


def parse_supergroup_topic_context_key(context_id: str) -> SupergroupTopicKey | None:
    if not context_id.startswith(SUPERGROUP_PREFIX):
        return None

    separator_index = context_id.rfind(TOPIC_SEPARATOR)
    if separator_index < len(SUPERGROUP_PREFIX):
        return None

    chat_id = context_id[len(SUPERGROUP_PREFIX) : separator_index]
    raw_thread_id = context_id[separator_index + len(TOPIC_SEPARATOR) :]
    if not chat_id:
        return None
    if raw_thread_id == GENERAL_TOPIC_ID:
        return SupergroupTopicKey(chat_id=chat_id, message_thread_id=None)
    if not (raw_thread_id.isascii() and raw_thread_id.isdigit()):
        return None

    message_thread_id = int(raw_thread_id)
    if message_thread_id <= 0:
        return None
    return SupergroupTopicKey(chat_id=chat_id, message_thread_id=message_thread_id)
