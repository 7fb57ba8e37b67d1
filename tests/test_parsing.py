from topicrelay.telegram import (
    IncomingCallback,
    IncomingMessage,
    TopicStatusChanged,
    parse_update,
)
from tests.telegram_fakes import (
    STAFF_CHAT_ID,
    USER_ID,
    callback_update,
    private_update,
    staff_update,
)


def test_private_text_message() -> None:
    update = private_update("hello", message_id=10)
    msg = parse_update(update)
    assert isinstance(msg, IncomingMessage)
    assert msg.is_private
    assert msg.chat_id == USER_ID
    assert msg.message_id == 10
    assert msg.text == "hello"
    assert msg.sender is not None and msg.sender.first_name == "Ada"
    assert msg.raw is update["message"]
    assert not msg.is_service


def test_media_without_text_has_empty_text() -> None:
    msg = parse_update(private_update(None, photo=[{"file_id": "p"}], media_group_id="g"))
    assert isinstance(msg, IncomingMessage)
    assert msg.text == ""
    assert msg.media_group_id == "g"


def test_topic_status_signals() -> None:
    closed = parse_update(staff_update(None, thread_id=42, forum_topic_closed={}))
    assert closed == TopicStatusChanged(chat_id=STAFF_CHAT_ID, thread_id=42, closed=True)
    reopened = parse_update(staff_update(None, thread_id=42, forum_topic_reopened={}))
    assert isinstance(reopened, TopicStatusChanged)
    assert not reopened.closed


def test_service_and_bot_messages_are_flagged() -> None:
    created = parse_update(
        staff_update(None, thread_id=42, forum_topic_created={"name": "Ada"})
    )
    assert isinstance(created, IncomingMessage)
    assert created.is_service

    update = staff_update("hi", thread_id=42)
    update["message"]["from"]["is_bot"] = True
    assert parse_update(update).from_bot


def test_callback_query() -> None:
    query = parse_update(callback_update("verify:abc:1"))
    assert isinstance(query, IncomingCallback)
    assert query.sender.id == USER_ID
    assert query.chat_id == USER_ID
    assert query.message_id == 900
    assert query.data == "verify:abc:1"


def test_callback_without_data_is_ignored() -> None:
    update = callback_update("x")
    del update["callback_query"]["data"]
    assert parse_update(update) is None


def test_invalid_or_empty_updates() -> None:
    assert parse_update({"update_id": 1}) is None
    assert parse_update({"update_id": 1, "message": {"message_id": "x"}}) is None
