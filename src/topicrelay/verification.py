"""Human verification gate.

A user is in exactly one of the states below, resolved from store records:

* ``Banned`` - ``banned:{user}`` present, all private interaction ignored
* ``Verified`` - ``verified:{user}`` present (``trusted`` never expires)
* ``Pending`` - ``user_challenge:{user}`` points at a live challenge
* ``Unverified`` - none of the above

At most one challenge exists per user: the lock is written with the challenge
and both expire together. Wrong answers do not consume the challenge.
"""

from __future__ import annotations

import secrets
import string
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

import msgspec

from . import notices
from .errors import ChallengeRejected, RejectReason, TransientGatewayError
from .logging import get_logger
from .questions import QUESTIONS, Question
from .store import KeyValueStore, get_json, put_json
from .telegram.api_models import User
from .telegram.client import BotClient
from .telegram.types import IncomingCallback

logger = get_logger(__name__)

T = TypeVar("T")

CALLBACK_PREFIX = "verify"
TRUSTED = "trusted"
CHALLENGE_ID_ALPHABET = string.ascii_lowercase + string.digits

Redeliver = Callable[[int, int, User | None], Awaitable[bool]]


@dataclass(frozen=True, slots=True)
class Unverified:
    pass


@dataclass(frozen=True, slots=True)
class Pending:
    challenge_id: str


@dataclass(frozen=True, slots=True)
class Verified:
    trusted: bool = False


@dataclass(frozen=True, slots=True)
class Banned:
    pass


VerificationState = Unverified | Pending | Verified | Banned


class ChallengeRecord(msgspec.Struct, forbid_unknown_fields=False):
    answer_index: int
    options: list[str]
    owner_user_id: int
    pending_message_id: int | None = None


@dataclass(frozen=True, slots=True)
class Challenge:
    challenge_id: str
    question: str
    options: tuple[str, ...]
    answer_index: int
    pending_message_id: int | None


@dataclass(frozen=True, slots=True)
class ValidationResult:
    passed: bool
    pending_message_id: int | None = None


def challenge_key(challenge_id: str) -> str:
    return f"chal:{challenge_id}"


def lock_key(user_id: int) -> str:
    return f"user_challenge:{user_id}"


def verified_key(user_id: int) -> str:
    return f"verified:{user_id}"


def banned_key(user_id: int) -> str:
    return f"banned:{user_id}"


def redelivery_key(user_id: int, message_id: int) -> str:
    return f"forwarded:{user_id}:{message_id}"


def secure_shuffle(items: Sequence[T]) -> list[T]:
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = secrets.randbelow(i + 1)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def new_challenge_id(length: int = 12) -> str:
    return "".join(secrets.choice(CHALLENGE_ID_ALPHABET) for _ in range(length))


def pick_question(bank: Sequence[Question] = QUESTIONS) -> Question:
    return bank[secrets.randbelow(len(bank))]


def callback_data(challenge_id: str, index: int) -> str:
    return f"{CALLBACK_PREFIX}:{challenge_id}:{index}"


def parse_callback_data(data: str) -> tuple[str, int | None] | None:
    parts = data.split(":")
    if len(parts) != 3 or parts[0] != CALLBACK_PREFIX or not parts[1]:
        return None
    try:
        index: int | None = int(parts[2])
    except ValueError:
        index = None
    return parts[1], index


def build_keyboard(
    challenge_id: str, options: Sequence[str], *, columns: int = 2
) -> dict:
    buttons = [
        {"text": option, "callback_data": callback_data(challenge_id, idx)}
        for idx, option in enumerate(options)
    ]
    rows = [buttons[i : i + columns] for i in range(0, len(buttons), columns)]
    return {"inline_keyboard": rows}


class VerificationGate:
    def __init__(
        self,
        store: KeyValueStore,
        bot: BotClient,
        *,
        challenge_ttl_s: int = 300,
        verified_ttl_s: int = 30 * 24 * 3600,
        challenge_id_length: int = 12,
        button_columns: int = 2,
        redelivery_marker_ttl_s: int = 3600,
        questions: Sequence[Question] = QUESTIONS,
    ) -> None:
        self._store = store
        self._bot = bot
        self._challenge_ttl_s = challenge_ttl_s
        self._verified_ttl_s = verified_ttl_s
        self._challenge_id_length = challenge_id_length
        self._button_columns = button_columns
        self._redelivery_marker_ttl_s = redelivery_marker_ttl_s
        self._questions = tuple(questions)
        self._redeliver: Redeliver | None = None

    def set_redeliver(self, redeliver: Redeliver) -> None:
        self._redeliver = redeliver

    async def state(self, user_id: int) -> VerificationState:
        if await self.is_banned(user_id):
            return Banned()
        verified = await self.verified(user_id)
        if verified is not None:
            return verified
        challenge_id = await self._store.get(lock_key(user_id))
        if challenge_id is not None:
            return Pending(challenge_id=challenge_id)
        return Unverified()

    async def begin(
        self, user_id: int, pending_message_id: int | None = None
    ) -> Challenge | None:
        """Issue a challenge unless one is already live for this user."""
        if await self._store.get(lock_key(user_id)) is not None:
            logger.info("verification.duplicate_skipped", user_id=user_id)
            return None

        question = pick_question(self._questions)
        options = secure_shuffle([*question.incorrect, question.correct])
        answer_index = options.index(question.correct)
        challenge_id = new_challenge_id(self._challenge_id_length)
        record = ChallengeRecord(
            answer_index=answer_index,
            options=options,
            owner_user_id=user_id,
            pending_message_id=pending_message_id,
        )
        await put_json(
            self._store, challenge_key(challenge_id), record, ttl_s=self._challenge_ttl_s
        )
        await self._store.put(
            lock_key(user_id), challenge_id, ttl_s=self._challenge_ttl_s
        )

        res = await self._bot.send_message(
            user_id,
            notices.CHALLENGE_PROMPT.format(question=question.text),
            parse_mode="Markdown",
            reply_markup=build_keyboard(
                challenge_id, options, columns=self._button_columns
            ),
        )
        if not res.ok:
            await self._discard(user_id, challenge_id)
            raise TransientGatewayError("sendMessage", res.description)

        logger.info(
            "verification.sent",
            user_id=user_id,
            challenge_id=challenge_id,
            has_pending=pending_message_id is not None,
        )
        return Challenge(
            challenge_id=challenge_id,
            question=question.text,
            options=tuple(options),
            answer_index=answer_index,
            pending_message_id=pending_message_id,
        )

    async def validate(
        self, challenge_id: str, selected_index: int | None, caller_user_id: int
    ) -> ValidationResult:
        record = await get_json(self._store, challenge_key(challenge_id), ChallengeRecord)
        if record is None:
            raise ChallengeRejected(RejectReason.EXPIRED, challenge_id)
        if record.owner_user_id != caller_user_id:
            raise ChallengeRejected(RejectReason.FOREIGN, challenge_id)
        if selected_index is None or not 0 <= selected_index < len(record.options):
            raise ChallengeRejected(RejectReason.OUT_OF_RANGE, challenge_id)

        if selected_index != record.answer_index:
            logger.info(
                "verification.failed",
                user_id=caller_user_id,
                challenge_id=challenge_id,
                selected_index=selected_index,
            )
            return ValidationResult(passed=False)

        await self._store.put(
            verified_key(caller_user_id), "1", ttl_s=self._verified_ttl_s
        )
        await self._discard(caller_user_id, challenge_id)
        logger.info(
            "verification.passed",
            user_id=caller_user_id,
            challenge_id=challenge_id,
        )
        return ValidationResult(
            passed=True, pending_message_id=record.pending_message_id
        )

    async def _discard(self, user_id: int, challenge_id: str) -> None:
        await self._store.delete(challenge_key(challenge_id))
        await self._store.delete(lock_key(user_id))

    async def handle_callback(self, query: IncomingCallback) -> bool:
        """Answer a verification button press; False if the data is not ours."""
        parsed = parse_callback_data(query.data)
        if parsed is None:
            return False
        challenge_id, selected_index = parsed
        user_id = query.sender.id
        try:
            result = await self.validate(challenge_id, selected_index, user_id)
        except ChallengeRejected as exc:
            text = {
                RejectReason.EXPIRED: notices.CHALLENGE_EXPIRED,
                RejectReason.FOREIGN: notices.CHALLENGE_INVALID,
                RejectReason.OUT_OF_RANGE: notices.CHALLENGE_BAD_OPTION,
            }[exc.reason]
            logger.info(
                "verification.rejected",
                user_id=user_id,
                challenge_id=challenge_id,
                reason=str(exc.reason),
            )
            await self._bot.answer_callback_query(
                query.callback_query_id, text, show_alert=True
            )
            return True

        if not result.passed:
            await self._bot.answer_callback_query(
                query.callback_query_id, notices.CHALLENGE_WRONG, show_alert=True
            )
            return True

        await self._bot.answer_callback_query(
            query.callback_query_id, notices.CHALLENGE_PASSED
        )
        if query.chat_id is not None and query.message_id is not None:
            await self._bot.edit_message_text(
                query.chat_id,
                query.message_id,
                notices.CHALLENGE_PASSED_EDIT,
                parse_mode="Markdown",
            )
        if result.pending_message_id is not None:
            await self.redeliver_pending(
                user_id, result.pending_message_id, query.sender
            )
        return True

    async def redeliver_pending(
        self, user_id: int, message_id: int, sender: User | None
    ) -> bool:
        marker = redelivery_key(user_id, message_id)
        if await self._store.get(marker) is not None:
            logger.info(
                "verification.redelivery_duplicate_skipped",
                user_id=user_id,
                message_id=message_id,
            )
            return False
        if self._redeliver is None:
            raise RuntimeError("no redelivery path configured")
        await self._store.put(marker, "1", ttl_s=self._redelivery_marker_ttl_s)
        try:
            delivered = await self._redeliver(user_id, message_id, sender)
        except Exception as exc:
            await self._store.delete(marker)
            logger.error(
                "verification.redelivery_failed",
                user_id=user_id,
                message_id=message_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            await self._bot.send_message(user_id, notices.PENDING_FAILED)
            return False
        if delivered:
            await self._bot.send_message(
                user_id, notices.PENDING_DELIVERED, reply_to_message_id=message_id
            )
        return delivered

    async def is_banned(self, user_id: int) -> bool:
        return await self._store.get(banned_key(user_id)) is not None

    async def verified(self, user_id: int) -> Verified | None:
        value = await self._store.get(verified_key(user_id))
        if value is None:
            return None
        return Verified(trusted=value == TRUSTED)

    async def trust(self, user_id: int) -> None:
        await self._store.put(verified_key(user_id), TRUSTED)

    async def reset(self, user_id: int) -> None:
        await self._store.delete(verified_key(user_id))

    async def ban(self, user_id: int) -> None:
        await self._store.put(banned_key(user_id), "1")

    async def unban(self, user_id: int) -> None:
        await self._store.delete(banned_key(user_id))
