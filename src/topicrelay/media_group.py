from __future__ import annotations

import enum
import time
from collections.abc import Awaitable, Callable
from typing import Any

import anyio
import msgspec

from .debounce import LatestOnlyScheduler, Spawn
from .logging import get_logger
from .store import KeyValueStore, get_json, iter_keys, put_json
from .telegram.api_models import Message
from .telegram.client import ApiResult, BotClient
from .telegram.types import IncomingMessage

logger = get_logger(__name__)

MEDIA_GROUP_PREFIX = "mg:"


class Direction(enum.StrEnum):
    TO_TOPIC = "p2t"
    TO_USER = "t2p"


class MediaItem(msgspec.Struct, forbid_unknown_fields=False):
    type: str
    file_id: str
    caption: str = ""
    message_id: int | None = None


class MediaGroupBuffer(msgspec.Struct, forbid_unknown_fields=False):
    target_chat_id: int
    thread_id: int | None = None
    items: list[MediaItem] = msgspec.field(default_factory=list)
    updated_at: float = 0.0
    token: int = 0


def media_group_key(direction: Direction | str, group_id: str) -> str:
    return f"{MEDIA_GROUP_PREFIX}{direction}:{group_id}"


def extract_media(message: Message) -> MediaItem | None:
    caption = message.caption or ""
    file_id: str | None = None
    kind: str | None = None
    if message.photo:
        # sizes are sent smallest first
        kind, file_id = "photo", message.photo[-1].file_id
    elif message.video is not None:
        kind, file_id = "video", message.video.file_id
    elif message.document is not None:
        kind, file_id = "document", message.document.file_id
    elif message.audio is not None:
        kind, file_id = "audio", message.audio.file_id
    elif message.animation is not None:
        kind, file_id = "animation", message.animation.file_id
    if kind is None or file_id is None:
        return None
    return MediaItem(
        type=kind, file_id=file_id, caption=caption, message_id=message.message_id
    )


class MediaGroupAggregator:
    """Coalesces a burst of album items into one ``sendMediaGroup`` call.

    Each item is appended to a buffer in the store and schedules a flush after
    the settle delay. The buffer's ``token`` grows with every item, so only
    the flush scheduled by the last item sends anything.
    """

    def __init__(
        self,
        store: KeyValueStore,
        bot: BotClient,
        *,
        spawn: Spawn,
        settle_delay_s: float = 3.0,
        buffer_ttl_s: int = 60,
        stale_after_s: float = 300.0,
        sweep_interval_s: float = 60.0,
        caption_limit: int = 1024,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._store = store
        self._bot = bot
        self._buffer_ttl_s = buffer_ttl_s
        self._stale_after_s = stale_after_s
        self._sweep_interval_s = sweep_interval_s
        self._caption_limit = caption_limit
        self._clock = clock
        self._monotonic = monotonic
        self._last_sweep: float | None = None
        # serialises load-append-save per buffer within this process
        self._buffer_locks: dict[str, anyio.Lock] = {}
        self._scheduler: LatestOnlyScheduler[MediaGroupBuffer] = LatestOnlyScheduler(
            spawn=spawn,
            delay_s=settle_delay_s,
            load=self.load,
            version_of=lambda buffer: buffer.token,
            sleep=sleep,
            label="media_group.flush",
        )

    async def load(self, key: str) -> MediaGroupBuffer | None:
        return await get_json(self._store, key, MediaGroupBuffer)

    async def add(
        self,
        msg: IncomingMessage,
        *,
        direction: Direction,
        target_chat_id: int,
        thread_id: int | None = None,
    ) -> bool:
        """Buffer one album item; returns False when it was relayed directly."""
        item = extract_media(msg.message)
        if item is None or msg.media_group_id is None:
            res = await self._bot.copy_message(
                target_chat_id, msg.chat_id, msg.message_id, thread_id=thread_id
            )
            if not res.ok:
                logger.warning(
                    "media_group.copy_failed",
                    direction=str(direction),
                    message_id=msg.message_id,
                    description=res.description,
                )
            return False

        key = media_group_key(direction, msg.media_group_id)
        lock = self._buffer_locks.setdefault(key, anyio.Lock())
        try:
            async with lock:
                buffer = await self.load(key)
                if buffer is None:
                    buffer = MediaGroupBuffer(
                        target_chat_id=target_chat_id, thread_id=thread_id
                    )
                buffer.items.append(item)
                buffer.updated_at = self._clock()
                buffer.token += 1
                await put_json(self._store, key, buffer, ttl_s=self._buffer_ttl_s)
                self._scheduler.schedule(key, buffer.token, self.flush)
        finally:
            if not lock.locked() and lock.statistics().tasks_waiting == 0:
                self._buffer_locks.pop(key, None)
        return True

    def build_payload(self, buffer: MediaGroupBuffer) -> list[dict[str, Any]]:
        media: list[dict[str, Any]] = []
        for item in buffer.items:
            if not item.type or not item.file_id:
                logger.warning("media_group.invalid_item", item=msgspec.to_builtins(item))
                continue
            entry: dict[str, Any] = {"type": item.type, "media": item.file_id}
            if not media and item.caption and self._caption_limit > 0:
                entry["caption"] = item.caption[: self._caption_limit]
            media.append(entry)
        return media

    async def flush(self, key: str, buffer: MediaGroupBuffer) -> None:
        # no retry: the buffer is dropped whatever the outcome
        try:
            media = self.build_payload(buffer)
            if not media:
                logger.warning("media_group.empty", key=key)
                return
            res = await self._bot.send_media_group(
                buffer.target_chat_id, media, thread_id=buffer.thread_id
            )
            self._log_result(key, res, len(media), buffer.target_chat_id)
        except Exception as exc:
            logger.error(
                "media_group.send_exception",
                key=key,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
        finally:
            await self._store.delete(key)

    def _log_result(self, key: str, res: ApiResult, count: int, target: int) -> None:
        if res.ok:
            logger.info(
                "media_group.sent", key=key, media_count=count, target_chat_id=target
            )
        else:
            logger.error(
                "media_group.send_failed",
                key=key,
                media_count=count,
                description=res.description,
            )

    async def sweep(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        deleted = 0
        keys = [key async for key in iter_keys(self._store, MEDIA_GROUP_PREFIX)]
        for key in keys:
            buffer = await self.load(key)
            if buffer is None:
                continue
            if now - buffer.updated_at > self._stale_after_s:
                await self._store.delete(key)
                deleted += 1
        if deleted:
            logger.info("media_group.swept", deleted=deleted)
        return deleted

    async def maybe_sweep(self) -> int:
        now = self._monotonic()
        if (
            self._last_sweep is not None
            and now - self._last_sweep < self._sweep_interval_s
        ):
            return 0
        self._last_sweep = now
        try:
            return await self.sweep()
        except Exception as exc:
            logger.error(
                "media_group.sweep_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return 0
