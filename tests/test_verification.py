import pytest

from topicrelay import notices
from topicrelay.errors import ChallengeRejected, RejectReason, TransientGatewayError
from topicrelay.questions import QUESTIONS, Question
from topicrelay.telegram.api_models import User
from topicrelay.telegram.client import ApiResult
from topicrelay.telegram.parsing import parse_update
from topicrelay.verification import (
    Banned,
    Pending,
    Unverified,
    Verified,
    VerificationGate,
    build_keyboard,
    callback_data,
    challenge_key,
    lock_key,
    new_challenge_id,
    parse_callback_data,
    redelivery_key,
    secure_shuffle,
    verified_key,
)
from tests.telegram_fakes import USER_ID, FakeBot, FakeClock, callback_update, make_store

QUESTION = Question("What is 1 plus 2?", "3", ("2", "4", "5"))


def _gate(bot: FakeBot, clock: FakeClock | None = None):
    clock = clock or FakeClock()
    store = make_store(clock)
    gate = VerificationGate(store, bot, questions=[QUESTION])
    return store, gate, clock


def test_question_bank_is_well_formed() -> None:
    assert len(QUESTIONS) >= 15
    for question in QUESTIONS:
        options = [question.correct, *question.incorrect]
        assert len(set(options)) == len(options) == 4


def test_secure_shuffle_is_a_permutation() -> None:
    items = list(range(20))
    shuffled = secure_shuffle(items)
    assert sorted(shuffled) == items
    assert items == list(range(20))


def test_challenge_ids_use_lowercase_alphanumerics() -> None:
    ids = {new_challenge_id(12) for _ in range(50)}
    assert len(ids) == 50
    for value in ids:
        assert len(value) == 12
        assert value.isalnum() and value == value.lower()


def test_callback_data_parsing() -> None:
    assert parse_callback_data(callback_data("abc", 2)) == ("abc", 2)
    assert parse_callback_data("verify:abc:x") == ("abc", None)
    assert parse_callback_data("verify:abc") is None
    assert parse_callback_data("other:abc:1") is None
    assert parse_callback_data("verify::1") is None


def test_keyboard_uses_two_columns() -> None:
    keyboard = build_keyboard("abc", ["a", "b", "c", "d"])
    rows = keyboard["inline_keyboard"]
    assert [len(row) for row in rows] == [2, 2]
    assert rows[1][0] == {"text": "c", "callback_data": "verify:abc:2"}


@pytest.mark.anyio
async def test_begin_stores_challenge_and_sends_keyboard(fake_bot: FakeBot) -> None:
    store, gate, _ = _gate(fake_bot)
    challenge = await gate.begin(USER_ID, pending_message_id=11)

    assert challenge is not None
    assert challenge.options[challenge.answer_index] == "3"
    assert sorted(challenge.options) == ["2", "3", "4", "5"]
    assert await store.get(lock_key(USER_ID)) == challenge.challenge_id
    assert await store.get(challenge_key(challenge.challenge_id)) is not None
    assert await gate.state(USER_ID) == Pending(challenge_id=challenge.challenge_id)

    [sent] = fake_bot.called("send_message")
    assert sent.args[0] == USER_ID
    assert QUESTION.text in sent.args[1]
    assert sent.kwargs["reply_markup"]["inline_keyboard"]


@pytest.mark.anyio
async def test_begin_is_idempotent_while_pending(fake_bot: FakeBot) -> None:
    _, gate, _ = _gate(fake_bot)
    assert await gate.begin(USER_ID, 1) is not None
    assert await gate.begin(USER_ID, 2) is None
    assert len(fake_bot.called("send_message")) == 1


@pytest.mark.anyio
async def test_begin_rolls_back_when_prompt_fails(fake_bot: FakeBot) -> None:
    store, gate, _ = _gate(fake_bot)
    fake_bot.script("send_message", ApiResult(ok=False, description="request timeout"))

    with pytest.raises(TransientGatewayError):
        await gate.begin(USER_ID, 1)
    assert await store.get(lock_key(USER_ID)) is None
    assert await gate.state(USER_ID) == Unverified()


@pytest.mark.anyio
async def test_validate_outcomes(fake_bot: FakeBot) -> None:
    store, gate, _ = _gate(fake_bot)
    challenge = await gate.begin(USER_ID, 11)
    assert challenge is not None
    wrong = (challenge.answer_index + 1) % 4

    with pytest.raises(ChallengeRejected) as foreign:
        await gate.validate(challenge.challenge_id, challenge.answer_index, USER_ID + 1)
    assert foreign.value.reason is RejectReason.FOREIGN

    with pytest.raises(ChallengeRejected) as out_of_range:
        await gate.validate(challenge.challenge_id, 9, USER_ID)
    assert out_of_range.value.reason is RejectReason.OUT_OF_RANGE

    result = await gate.validate(challenge.challenge_id, wrong, USER_ID)
    assert not result.passed
    # wrong answers leave the challenge usable
    result = await gate.validate(challenge.challenge_id, challenge.answer_index, USER_ID)
    assert result.passed
    assert result.pending_message_id == 11
    assert await store.get(verified_key(USER_ID)) == "1"
    assert await store.get(lock_key(USER_ID)) is None

    with pytest.raises(ChallengeRejected) as expired:
        await gate.validate(challenge.challenge_id, challenge.answer_index, USER_ID)
    assert expired.value.reason is RejectReason.EXPIRED


@pytest.mark.anyio
async def test_challenge_expires_with_lock(fake_bot: FakeBot) -> None:
    store, gate, clock = _gate(fake_bot)
    challenge = await gate.begin(USER_ID, None)
    assert challenge is not None

    clock.advance(300)
    assert await gate.state(USER_ID) == Unverified()
    with pytest.raises(ChallengeRejected) as excinfo:
        await gate.validate(challenge.challenge_id, challenge.answer_index, USER_ID)
    assert excinfo.value.reason is RejectReason.EXPIRED
    assert await gate.begin(USER_ID, None) is not None


@pytest.mark.anyio
async def test_state_precedence(fake_bot: FakeBot) -> None:
    _, gate, clock = _gate(fake_bot)
    assert await gate.state(USER_ID) == Unverified()

    await gate.trust(USER_ID)
    assert await gate.state(USER_ID) == Verified(trusted=True)
    clock.advance(365 * 24 * 3600)
    assert await gate.state(USER_ID) == Verified(trusted=True)

    await gate.ban(USER_ID)
    assert await gate.state(USER_ID) == Banned()
    await gate.unban(USER_ID)
    await gate.reset(USER_ID)
    assert await gate.state(USER_ID) == Unverified()


@pytest.mark.anyio
async def test_correct_callback_redelivers_pending_message(fake_bot: FakeBot) -> None:
    store, gate, _ = _gate(fake_bot)
    redelivered: list[tuple[int, int, User | None]] = []

    async def redeliver(user_id: int, message_id: int, sender: User | None) -> bool:
        redelivered.append((user_id, message_id, sender))
        return True

    gate.set_redeliver(redeliver)
    challenge = await gate.begin(USER_ID, 11)
    assert challenge is not None
    query = parse_update(
        callback_update(callback_data(challenge.challenge_id, challenge.answer_index))
    )

    assert await gate.handle_callback(query)
    assert [(uid, mid) for uid, mid, _ in redelivered] == [(USER_ID, 11)]
    assert await store.get(redelivery_key(USER_ID, 11)) == "1"
    [answer] = fake_bot.called("answer_callback_query")
    assert answer.args[1] == notices.CHALLENGE_PASSED
    assert fake_bot.called("edit_message_text")[0].args[:2] == (USER_ID, 900)
    replies = [c for c in fake_bot.called("send_message") if c.args[1] == notices.PENDING_DELIVERED]
    assert replies and replies[0].kwargs["reply_to_message_id"] == 11

    assert not await gate.redeliver_pending(USER_ID, 11, None)
    assert len(redelivered) == 1


@pytest.mark.anyio
async def test_wrong_and_expired_callbacks_alert(fake_bot: FakeBot) -> None:
    _, gate, _ = _gate(fake_bot)
    gate.set_redeliver(lambda *_: pytest.fail("must not redeliver"))
    challenge = await gate.begin(USER_ID, 11)
    assert challenge is not None
    wrong = (challenge.answer_index + 1) % 4

    await gate.handle_callback(
        parse_update(callback_update(callback_data(challenge.challenge_id, wrong)))
    )
    await gate.handle_callback(parse_update(callback_update("verify:missing:0")))

    answers = fake_bot.called("answer_callback_query")
    assert [a.args[1] for a in answers] == [
        notices.CHALLENGE_WRONG,
        notices.CHALLENGE_EXPIRED,
    ]
    assert all(a.kwargs["show_alert"] for a in answers)
    assert not await gate.handle_callback(parse_update(callback_update("other")))


@pytest.mark.anyio
async def test_failed_redelivery_releases_marker(fake_bot: FakeBot) -> None:
    store, gate, _ = _gate(fake_bot)

    async def broken(user_id: int, message_id: int, sender: User | None) -> bool:
        raise TransientGatewayError("forwardMessage", "request timeout")

    gate.set_redeliver(broken)
    assert not await gate.redeliver_pending(USER_ID, 11, None)
    assert await store.get(redelivery_key(USER_ID, 11)) is None
    assert fake_bot.called("send_message")[-1].args == (USER_ID, notices.PENDING_FAILED)
