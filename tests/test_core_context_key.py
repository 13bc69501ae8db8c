import pytest

from telegram_pi_bot.core.context_key import (
    SupergroupTopicKey,
    build_private_context_key,
    build_supergroup_topic_context_key,
    parse_supergroup_topic_context_key,
)


def test_build_keys() -> None:
    assert build_private_context_key(42) == "42"
    assert build_supergroup_topic_context_key(-100123, 10) == "supergroup--100123-topic-10"
    assert build_supergroup_topic_context_key("-100123", None) == "supergroup--100123-topic-general"


def test_parse_topic_and_general_keys() -> None:
    assert parse_supergroup_topic_context_key("supergroup--100123-topic-10") == SupergroupTopicKey(
        chat_id="-100123", message_thread_id=10
    )
    assert parse_supergroup_topic_context_key("supergroup--100123-topic-general") == SupergroupTopicKey(
        chat_id="-100123", message_thread_id=None
    )


@pytest.mark.parametrize(
    "context_id",
    [
        "12345",
        "supergroup--topic-10",
        "supergroup--100123",
        "supergroup--100123-topic-0",
        "supergroup--100123-topic-abc",
        "supergroup--100123-topic--5",
    ],
)
def test_parse_rejects_other_context_ids(context_id: str) -> None:
    assert parse_supergroup_topic_context_key(context_id) is None
