"""User <-> forum topic mapping.

Records live under ``user:{user_id}`` and a reverse index under
``thread:{topic_id}``. There is no locking: two concurrent ``create`` calls for
the same user both allocate a topic and the last write wins, leaving the other
topic unused. The reverse index is repaired lazily and may be briefly absent.
"""

from __future__ import annotations

import re
from collections.abc import AsyncIterator

import msgspec

from .errors import TransientGatewayError
from .health import raise_for_setup
from .logging import get_logger
from .store import KeyValueStore, get_json, iter_keys, put_json
from .telegram.api_models import User
from .telegram.client import BotClient

logger = get_logger(__name__)

USER_PREFIX = "user:"
THREAD_PREFIX = "thread:"

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_WHITESPACE_RE = re.compile(r"\s+")
_USERNAME_RE = re.compile(r"[^A-Za-z0-9_]")


class ConversationRecord(msgspec.Struct, forbid_unknown_fields=False):
    topic_id: int | None = None
    title: str = ""
    closed: bool = False


def user_key(user_id: int) -> str:
    return f"{USER_PREFIX}{user_id}"


def thread_key(topic_id: int) -> str:
    return f"{THREAD_PREFIX}{topic_id}"


def user_id_from_key(key: str) -> int | None:
    try:
        return int(key.removeprefix(USER_PREFIX))
    except ValueError:
        return None


def build_topic_title(
    user: User | None, *, max_name_length: int = 30, max_title_length: int = 128
) -> str:
    if user is None:
        return "User"
    first = (user.first_name or "").strip()[:max_name_length]
    last = (user.last_name or "").strip()[:max_name_length]
    name = _CONTROL_CHARS_RE.sub("", f"{first} {last}")
    name = _WHITESPACE_RE.sub(" ", name).strip() or "User"
    username = _USERNAME_RE.sub("", user.username or "")[:20]
    suffix = f" @{username}" if username else ""
    return (name + suffix)[:max_title_length]


class ConversationRegistry:
    def __init__(self, store: KeyValueStore, bot: BotClient, *, staff_chat_id: int) -> None:
        self._store = store
        self._bot = bot
        self._staff_chat_id = staff_chat_id

    async def get(self, user_id: int) -> ConversationRecord | None:
        return await get_json(self._store, user_key(user_id), ConversationRecord)

    async def _save(self, user_id: int, record: ConversationRecord) -> None:
        await put_json(self._store, user_key(user_id), record)

    async def open_topic(self, title: str) -> int:
        """Create a forum topic in the staff chat without touching any record."""
        res = await self._bot.create_forum_topic(self._staff_chat_id, title)
        raise_for_setup(res, method="createForumTopic", chat_id=self._staff_chat_id)
        if not res.ok or res.thread_id is None:
            raise TransientGatewayError("createForumTopic", res.description)
        return res.thread_id

    async def create(self, user_id: int, title: str) -> ConversationRecord:
        topic_id = await self.open_topic(title)
        record = ConversationRecord(topic_id=topic_id, title=title, closed=False)
        await self._save(user_id, record)
        await self._store.put(thread_key(topic_id), str(user_id))
        logger.info("registry.topic_created", user_id=user_id, topic_id=topic_id)
        return record

    async def close(self, user_id: int) -> ConversationRecord | None:
        return await self._set_closed(user_id, True)

    async def reopen(self, user_id: int) -> ConversationRecord | None:
        return await self._set_closed(user_id, False)

    async def _set_closed(self, user_id: int, closed: bool) -> ConversationRecord | None:
        record = await self.get(user_id)
        if record is None:
            return None
        record.closed = closed
        await self._save(user_id, record)
        return record

    async def update_topic(
        self, user_id: int, new_topic_id: int, *, title: str | None = None
    ) -> ConversationRecord:
        record = await self.get(user_id) or ConversationRecord()
        if title is not None:
            record.title = title
        old_topic_id = record.topic_id
        if old_topic_id is not None and old_topic_id != new_topic_id:
            await self._store.delete(thread_key(old_topic_id))
        record.topic_id = new_topic_id
        await self._save(user_id, record)
        await self._store.put(thread_key(new_topic_id), str(user_id))
        return record

    async def abandon_topic(self, user_id: int, topic_id: int) -> None:
        """Forget a dead topic: drop its reverse index and the record's reference."""
        await self._store.delete(thread_key(topic_id))
        record = await self.get(user_id)
        if record is not None and record.topic_id == topic_id:
            record.topic_id = None
            await self._save(user_id, record)

    async def remove(self, user_id: int, topic_id: int | None = None) -> None:
        if topic_id is None:
            record = await self.get(user_id)
            topic_id = record.topic_id if record is not None else None
        await self._store.delete(user_key(user_id))
        if topic_id is not None:
            await self._store.delete(thread_key(topic_id))

    async def ensure_reverse_index(self, user_id: int, record: ConversationRecord) -> None:
        if record.topic_id is None:
            return
        key = thread_key(record.topic_id)
        if await self._store.get(key) is None:
            await self._store.put(key, str(user_id))
            logger.info(
                "registry.reverse_index_repaired",
                user_id=user_id,
                topic_id=record.topic_id,
            )

    async def find_user_by_topic(self, topic_id: int) -> int | None:
        mapped = await self._store.get(thread_key(topic_id))
        if mapped is not None:
            try:
                return int(mapped)
            except ValueError:
                logger.warning("registry.reverse_index_invalid", topic_id=topic_id)
        async for user_id, record in self.iter_records():
            if record.topic_id == topic_id:
                await self._store.put(thread_key(topic_id), str(user_id))
                logger.info(
                    "registry.reverse_index_repaired",
                    user_id=user_id,
                    topic_id=topic_id,
                )
                return user_id
        return None

    async def set_closed_for_topic(self, topic_id: int, closed: bool) -> int:
        # historical duplicates may map several users to one topic
        updated = 0
        async for user_id, record in self.iter_records():
            if record.topic_id != topic_id:
                continue
            record.closed = closed
            await self._save(user_id, record)
            updated += 1
        return updated

    async def iter_records(self) -> AsyncIterator[tuple[int, ConversationRecord]]:
        async for key in iter_keys(self._store, USER_PREFIX):
            user_id = user_id_from_key(key)
            if user_id is None:
                continue
            record = await get_json(self._store, key, ConversationRecord)
            if record is not None:
                yield user_id, record

    async def user_keys(self) -> list[str]:
        return [key async for key in iter_keys(self._store, USER_PREFIX)]
