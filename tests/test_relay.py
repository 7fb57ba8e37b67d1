import pytest
from pydantic import SecretStr

from topicrelay import notices
from topicrelay.registry import ConversationRecord, user_key
from topicrelay.runtime import RelayRuntime, build_runtime
from topicrelay.settings import MediaGroupSettings, RelaySettings, StoreSettings
from topicrelay.store import MemoryStore, get_json, put_json
from topicrelay.telegram.client import ApiResult
from topicrelay.verification import (
    ChallengeRecord,
    callback_data,
    challenge_key,
    lock_key,
)
from tests.telegram_fakes import (
    STAFF_CHAT_ID,
    USER_ID,
    FakeBot,
    Recorder,
    callback_update,
    private_update,
    staff_update,
)


def _runtime(bot: FakeBot, spawned: Recorder) -> RelayRuntime:
    settings = RelaySettings(
        bot_token=SecretStr("123:abc"),
        staff_chat_id=STAFF_CHAT_ID,
        store=StoreSettings(backend="memory"),
        media_groups=MediaGroupSettings(settle_delay_s=0),
    )
    return build_runtime(settings, spawn=spawned, bot=bot, store=MemoryStore())


async def _pass_challenge(rt: RelayRuntime, *, correct: bool = True) -> None:
    challenge_id = await rt.store.get(lock_key(USER_ID))
    assert challenge_id is not None
    record = await get_json(rt.store, challenge_key(challenge_id), ChallengeRecord)
    assert record is not None
    index = record.answer_index if correct else (record.answer_index + 1) % 4
    await rt.relay.handle_update(callback_update(callback_data(challenge_id, index)))


def _texts_to_user(bot: FakeBot) -> list[str]:
    return [c.args[1] for c in bot.called("send_message") if c.args[0] == USER_ID]


@pytest.mark.anyio
async def test_first_message_is_held_until_verified(
    fake_bot: FakeBot, spawned: Recorder
) -> None:
    rt = _runtime(fake_bot, spawned)
    await rt.relay.handle_update(private_update("I need help", message_id=11))

    assert not fake_bot.called("create_forum_topic")
    [prompt] = fake_bot.called("send_message")
    assert prompt.kwargs["reply_markup"] is not None

    await _pass_challenge(rt, correct=False)
    assert not fake_bot.called("forward_message")

    await _pass_challenge(rt)
    [forward] = fake_bot.called("forward_message")
    assert forward.args == (STAFF_CHAT_ID, USER_ID, 11)
    assert forward.kwargs["thread_id"] == 101
    assert notices.PENDING_DELIVERED in _texts_to_user(fake_bot)

    await rt.relay.handle_update(private_update("more", message_id=12))
    assert len(fake_bot.called("forward_message")) == 2


@pytest.mark.anyio
async def test_start_command_has_nothing_to_redeliver(
    fake_bot: FakeBot, spawned: Recorder
) -> None:
    rt = _runtime(fake_bot, spawned)
    await rt.relay.handle_update(private_update("/start"))
    await _pass_challenge(rt)
    assert not fake_bot.called("forward_message")
    assert notices.PENDING_DELIVERED not in _texts_to_user(fake_bot)


@pytest.mark.anyio
async def test_other_commands_and_banned_users_are_ignored(
    fake_bot: FakeBot, spawned: Recorder
) -> None:
    rt = _runtime(fake_bot, spawned)
    await rt.relay.handle_update(private_update("/help"))
    assert fake_bot.calls == []

    await rt.verification.ban(USER_ID)
    await rt.relay.handle_update(private_update("hello"))
    assert fake_bot.calls == []


@pytest.mark.anyio
async def test_message_rate_limit(fake_bot: FakeBot, spawned: Recorder) -> None:
    rt = _runtime(fake_bot, spawned)
    await rt.verification.trust(USER_ID)
    for message_id in range(1, 47):
        await rt.relay.handle_update(private_update("hi", message_id=message_id))

    assert len(fake_bot.called("forward_message")) == 45
    assert _texts_to_user(fake_bot) == [notices.RATE_LIMITED]


@pytest.mark.anyio
async def test_verification_rate_limit(fake_bot: FakeBot, spawned: Recorder) -> None:
    rt = _runtime(fake_bot, spawned)
    for message_id in range(1, 5):
        await rt.relay.handle_update(private_update("hi", message_id=message_id))

    texts = _texts_to_user(fake_bot)
    assert len(texts) == 2
    assert texts[-1] == notices.VERIFY_RATE_LIMITED


@pytest.mark.anyio
async def test_failures_become_a_generic_notice(
    fake_bot: FakeBot, spawned: Recorder
) -> None:
    rt = _runtime(fake_bot, spawned)
    await rt.verification.trust(USER_ID)
    fake_bot.script("create_forum_topic", ApiResult(ok=False, description="request timeout"))

    await rt.relay.handle_update(private_update("hi"))
    assert _texts_to_user(fake_bot) == [notices.SYSTEM_BUSY]
    staff = [c for c in fake_bot.called("send_message") if c.args[0] == STAFF_CHAT_ID]
    assert staff == []


@pytest.mark.anyio
async def test_setup_errors_are_reported_to_staff(
    fake_bot: FakeBot, spawned: Recorder
) -> None:
    rt = _runtime(fake_bot, spawned)
    await rt.verification.trust(USER_ID)
    fake_bot.script(
        "create_forum_topic",
        ApiResult(ok=False, description="Bad Request: not enough rights to create a topic"),
    )

    await rt.relay.handle_update(private_update("hi"))
    assert _texts_to_user(fake_bot) == [notices.SYSTEM_BUSY]
    [staff] = [c for c in fake_bot.called("send_message") if c.args[0] == STAFF_CHAT_ID]
    assert staff.args[1].startswith("⚠️ *Relay misconfigured*")
    assert "123:abc" not in staff.args[1]


@pytest.mark.anyio
async def test_topic_closed_signal_blocks_user(
    fake_bot: FakeBot, spawned: Recorder
) -> None:
    rt = _runtime(fake_bot, spawned)
    await rt.verification.trust(USER_ID)
    await rt.relay.handle_update(private_update("hi", message_id=1))

    await rt.relay.handle_update(staff_update(None, thread_id=101, forum_topic_closed={}))
    await rt.relay.handle_update(private_update("again", message_id=2))
    assert _texts_to_user(fake_bot)[-1] == notices.CONVERSATION_CLOSED

    await rt.relay.handle_update(staff_update(None, thread_id=101, forum_topic_reopened={}))
    await rt.relay.handle_update(private_update("again", message_id=3))
    assert len(fake_bot.called("forward_message")) == 2


@pytest.mark.anyio
async def test_staff_reply_reaches_user(fake_bot: FakeBot, spawned: Recorder) -> None:
    rt = _runtime(fake_bot, spawned)
    await rt.verification.trust(USER_ID)
    await rt.relay.handle_update(private_update("hi"))

    await rt.relay.handle_update(staff_update("hello from staff", thread_id=101))
    [copy] = fake_bot.called("copy_message")
    assert copy.args == (USER_ID, STAFF_CHAT_ID, 500)


@pytest.mark.anyio
async def test_service_and_bot_messages_are_ignored(
    fake_bot: FakeBot, spawned: Recorder
) -> None:
    rt = _runtime(fake_bot, spawned)
    await rt.verification.trust(USER_ID)
    await rt.relay.handle_update(private_update("hi"))
    calls_before = len(fake_bot.calls)

    await rt.relay.handle_update(
        staff_update(None, thread_id=101, forum_topic_created={"name": "Ada"})
    )
    bot_update = staff_update("echo", thread_id=101)
    bot_update["message"]["from"]["is_bot"] = True
    await rt.relay.handle_update(bot_update)
    assert len(fake_bot.calls) == calls_before


@pytest.mark.anyio
async def test_every_message_schedules_a_sweep(
    fake_bot: FakeBot, spawned: Recorder
) -> None:
    rt = _runtime(fake_bot, spawned)
    await rt.relay.handle_update(private_update("/help"))
    await rt.relay.handle_update(staff_update(None, thread_id=5, forum_topic_closed={}))
    sweeps = [func for func, _ in spawned.calls if func == rt.aggregator.maybe_sweep]
    assert len(sweeps) == 2


@pytest.mark.anyio
async def test_user_album_is_sent_as_one_group(
    fake_bot: FakeBot, spawned: Recorder
) -> None:
    rt = _runtime(fake_bot, spawned)
    await rt.verification.trust(USER_ID)
    for message_id, file_id in ((1, "a"), (2, "b")):
        await rt.relay.handle_update(
            private_update(
                None,
                message_id=message_id,
                media_group_id="album",
                photo=[{"file_id": file_id}],
                caption="look" if message_id == 1 else None,
            )
        )
    await spawned.run_all()

    [sent] = fake_bot.called("send_media_group")
    assert sent.args[0] == STAFF_CHAT_ID
    assert sent.kwargs["thread_id"] == 101
    assert sent.args[1] == [
        {"type": "photo", "media": "a", "caption": "look"},
        {"type": "photo", "media": "b"},
    ]


@pytest.mark.anyio
async def test_pending_message_into_closed_conversation_is_not_confirmed(
    fake_bot: FakeBot, spawned: Recorder
) -> None:
    rt = _runtime(fake_bot, spawned)
    await put_json(rt.store, user_key(USER_ID), ConversationRecord(topic_id=101, closed=True))

    await rt.relay.handle_update(private_update("hello", message_id=11))
    await _pass_challenge(rt)

    texts = _texts_to_user(fake_bot)
    assert notices.CONVERSATION_CLOSED in texts
    assert notices.PENDING_DELIVERED not in texts
    assert not fake_bot.called("forward_message")
