from __future__ import annotations

import enum
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from .errors import SetupError
from .logging import get_logger
from .telegram.client import ApiResult, BotClient

logger = get_logger(__name__)

# zero-width space, invisible in the staff chat
PROBE_TEXT = "\u200b"

TOPIC_MISSING_MARKERS = (
    "thread not found",
    "topic not found",
    "message thread not found",
    "forum topic not found",
    "topic deleted",
    "thread deleted",
    "topic closed permanently",
)

SETUP_ERROR_MARKERS = (
    "chat not found",
    "not enough rights",
    "bot is not a member",
    "bot was kicked",
    "chat_admin_required",
)


def is_topic_missing(description: str | None) -> bool:
    text = (description or "").lower()
    return any(marker in text for marker in TOPIC_MISSING_MARKERS)


def is_setup_error(description: str | None) -> bool:
    text = (description or "").lower()
    return any(marker in text for marker in SETUP_ERROR_MARKERS)


def raise_for_setup(result: ApiResult, *, method: str, chat_id: int) -> None:
    if result.ok or not is_setup_error(result.description):
        return
    raise SetupError(
        f"{method} rejected for chat {chat_id}: {result.description}. "
        "Check the staff chat id and that the bot can manage topics."
    )


class HealthCache(Protocol):
    def is_healthy(self, topic_id: int) -> bool: ...

    def mark_healthy(self, topic_id: int) -> None: ...

    def invalidate(self, topic_id: int) -> None: ...


class ThreadHealthCache:
    """Memoizes recent successful probes per topic id.

    Process local and never authoritative: an empty or stale cache only costs
    an extra probe.
    """

    def __init__(
        self, *, ttl_s: float = 60.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._ttl_s = ttl_s
        self._clock = clock
        self._checked_at: dict[int, float] = {}

    def is_healthy(self, topic_id: int) -> bool:
        checked_at = self._checked_at.get(topic_id)
        if checked_at is None:
            return False
        if self._clock() - checked_at >= self._ttl_s:
            self._checked_at.pop(topic_id, None)
            return False
        return True

    def mark_healthy(self, topic_id: int) -> None:
        self._checked_at[topic_id] = self._clock()

    def invalidate(self, topic_id: int) -> None:
        self._checked_at.pop(topic_id, None)


class ProbeStatus(enum.StrEnum):
    ALIVE = "alive"
    DELETED = "deleted"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True, slots=True)
class ProbeResult:
    status: ProbeStatus
    topic_id: int
    echoed_topic_id: int | None = None
    message_id: int | None = None
    description: str | None = None

    @property
    def redirected(self) -> bool:
        return self.message_id is not None and self.echoed_topic_id != self.topic_id


async def probe_topic(bot: BotClient, *, chat_id: int, topic_id: int) -> ProbeResult:
    res = await bot.send_message(chat_id, PROBE_TEXT, thread_id=topic_id)
    if res.ok:
        status = (
            ProbeStatus.ALIVE if res.thread_id == topic_id else ProbeStatus.DELETED
        )
        return ProbeResult(
            status=status,
            topic_id=topic_id,
            echoed_topic_id=res.thread_id,
            message_id=res.message_id,
        )
    if is_topic_missing(res.description):
        status = ProbeStatus.DELETED
    else:
        raise_for_setup(res, method="sendMessage", chat_id=chat_id)
        status = ProbeStatus.AMBIGUOUS
    return ProbeResult(status=status, topic_id=topic_id, description=res.description)


async def discard_message(bot: BotClient, *, chat_id: int, message_id: int | None) -> None:
    if message_id is None:
        return
    res = await bot.delete_message(chat_id, message_id)
    if not res.ok:
        logger.debug(
            "message.discard_failed",
            chat_id=chat_id,
            message_id=message_id,
            description=res.description,
        )
