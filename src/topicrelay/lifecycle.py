"""Topic lifecycle and self-healing.

Relaying a private message into its user's topic goes through:

1. refuse closed conversations;
2. create a topic when the user has none;
3. probe the topic (skipped while the health cache is fresh) and recreate it
   when the gateway reports it deleted or silently redirects the probe, at
   most ``max_repair_attempts`` times per repair window;
4. forward the message (albums go to the media group aggregator);
5. recreate and copy again when the forward lands in another thread;
6. recreate once and re-forward when the forward reports a missing topic,
   raise on configuration errors, fall back to a copy otherwise.
"""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import anyio

from . import notices
from .errors import DeletionSignal, TransientGatewayError
from .health import (
    HealthCache,
    ProbeResult,
    ProbeStatus,
    discard_message,
    is_topic_missing,
    probe_topic,
    raise_for_setup,
)
from .logging import get_logger
from .media_group import Direction, MediaGroupAggregator
from .registry import (
    ConversationRecord,
    ConversationRegistry,
    build_topic_title,
    user_id_from_key,
)
from .store import KeyValueStore, get_int
from .telegram.api_models import User
from .telegram.client import ApiResult, BotClient
from .telegram.types import IncomingMessage
from .verification import VerificationGate

logger = get_logger(__name__)


class RelayOutcome(enum.StrEnum):
    DELIVERED = "delivered"
    QUEUED = "queued"
    CLOSED = "closed"
    BUSY = "busy"


@dataclass(frozen=True, slots=True)
class CleanedUser:
    user_id: int
    topic_id: int
    title: str


@dataclass(slots=True)
class CleanupReport:
    total: int = 0
    errors: int = 0
    cleaned: list[CleanedUser] = field(default_factory=list)


def retry_key(user_id: int) -> str:
    return f"retry:{user_id}"


def render_cleanup_report(report: CleanupReport, *, max_display: int = 20) -> str:
    lines = [
        "✅ *Cleanup finished*",
        "",
        "📊 *Summary*",
        f"- users cleaned: {len(report.cleaned)}",
        f"- errors: {report.errors}",
        f"- users scanned: {report.total}",
        "",
    ]
    if not report.cleaned:
        lines.append("✨ No stale conversations found.")
        return "\n".join(lines)
    lines.append("🗑️ *Removed conversations* (topic deleted):")
    for user in report.cleaned[:max_display]:
        lines.append(f"- UID: `{user.user_id}` | topic: {user.title or 'unknown'}")
    hidden = len(report.cleaned) - max_display
    if hidden > 0:
        lines.append(f"...and {hidden} more")
    lines.append("")
    lines.append("💡 These users will verify again and get a new topic on their next message.")
    return "\n".join(lines)


class TopicLifecycle:
    def __init__(
        self,
        *,
        registry: ConversationRegistry,
        store: KeyValueStore,
        bot: BotClient,
        staff_chat_id: int,
        health: HealthCache,
        aggregator: MediaGroupAggregator,
        verification: VerificationGate,
        max_repair_attempts: int = 3,
        repair_window_s: int = 60,
        max_name_length: int = 30,
        max_title_length: int = 128,
        cleanup_batch_size: int = 10,
        cleanup_pause_s: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._registry = registry
        self._store = store
        self._bot = bot
        self._staff_chat_id = staff_chat_id
        self._health = health
        self._aggregator = aggregator
        self._verification = verification
        self._max_repair_attempts = max_repair_attempts
        self._repair_window_s = repair_window_s
        self._max_name_length = max_name_length
        self._max_title_length = max_title_length
        self._cleanup_batch_size = cleanup_batch_size
        self._cleanup_pause_s = cleanup_pause_s
        self._sleep = sleep

    def _title_for(self, sender: User | None, record: ConversationRecord | None) -> str:
        if sender is None and record is not None and record.title:
            return record.title
        return build_topic_title(
            sender,
            max_name_length=self._max_name_length,
            max_title_length=self._max_title_length,
        )

    async def relay_to_topic(self, msg: IncomingMessage) -> RelayOutcome:
        return await self.relay(
            msg.chat_id,
            msg.message_id,
            sender=msg.sender,
            album=msg if msg.media_group_id is not None else None,
        )

    async def relay(
        self,
        user_id: int,
        message_id: int,
        *,
        sender: User | None = None,
        album: IncomingMessage | None = None,
    ) -> RelayOutcome:
        record = await self._registry.get(user_id)
        if record is not None and record.closed:
            await self._bot.send_message(user_id, notices.CONVERSATION_CLOSED)
            return RelayOutcome.CLOSED

        if record is None or record.topic_id is None:
            record = await self._registry.create(user_id, self._title_for(sender, record))
        else:
            await self._registry.ensure_reverse_index(user_id, record)

        healthy = await self._ensure_healthy(user_id, record, sender)
        if healthy is None:
            await self._bot.send_message(user_id, notices.REPAIR_BUSY)
            return RelayOutcome.BUSY
        record = healthy
        assert record.topic_id is not None

        if album is not None:
            await self._aggregator.add(
                album,
                direction=Direction.TO_TOPIC,
                target_chat_id=self._staff_chat_id,
                thread_id=record.topic_id,
            )
            return RelayOutcome.QUEUED

        return await self._forward(user_id, message_id, record, sender)

    async def _ensure_healthy(
        self, user_id: int, record: ConversationRecord, sender: User | None
    ) -> ConversationRecord | None:
        topic_id = record.topic_id
        assert topic_id is not None
        if self._health.is_healthy(topic_id):
            return record

        probe = await probe_topic(
            self._bot, chat_id=self._staff_chat_id, topic_id=topic_id
        )
        if probe.status is ProbeStatus.ALIVE:
            self._health.mark_healthy(topic_id)
            await discard_message(
                self._bot, chat_id=self._staff_chat_id, message_id=probe.message_id
            )
            await self._store.delete(retry_key(user_id))
            return record

        if probe.status is ProbeStatus.AMBIGUOUS:
            # the forward below decides
            logger.warning(
                "topic.probe_ambiguous",
                user_id=user_id,
                topic_id=topic_id,
                description=probe.description,
            )
            return record

        if probe.redirected:
            await discard_message(
                self._bot, chat_id=self._staff_chat_id, message_id=probe.message_id
            )
        attempts = await get_int(self._store, retry_key(user_id))
        if attempts >= self._max_repair_attempts:
            logger.warning(
                "topic.repair_refused",
                user_id=user_id,
                topic_id=topic_id,
                attempts=attempts,
                max_attempts=self._max_repair_attempts,
            )
            return None
        await self._store.put(
            retry_key(user_id), str(attempts + 1), ttl_s=self._repair_window_s
        )
        logger.info(
            "topic.repair",
            user_id=user_id,
            old_topic_id=topic_id,
            echoed_topic_id=probe.echoed_topic_id,
            attempt=attempts + 1,
            max_attempts=self._max_repair_attempts,
            description=probe.description,
        )
        return await self._recreate(user_id, record, sender)

    async def _recreate(
        self, user_id: int, record: ConversationRecord, sender: User | None
    ) -> ConversationRecord:
        old_topic_id = record.topic_id
        if old_topic_id is not None:
            # a failed create below leaves the record topic-less, not dangling
            await self._registry.abandon_topic(user_id, old_topic_id)
            self._health.invalidate(old_topic_id)
        title = self._title_for(sender, record)
        new_topic_id = await self._registry.open_topic(title)
        new_record = await self._registry.update_topic(user_id, new_topic_id, title=title)
        logger.info(
            "topic.repaired",
            user_id=user_id,
            old_topic_id=old_topic_id,
            new_topic_id=new_topic_id,
        )
        return new_record

    async def _forward_into(
        self, user_id: int, message_id: int, topic_id: int | None
    ) -> ApiResult:
        """Forward once; raises DeletionSignal when the topic is gone."""
        res = await self._bot.forward_message(
            self._staff_chat_id, user_id, message_id, thread_id=topic_id
        )
        if res.ok and res.thread_id != topic_id:
            raise DeletionSignal(
                topic_id, res.description, misplaced_message_id=res.message_id
            )
        if not res.ok and is_topic_missing(res.description):
            raise DeletionSignal(topic_id, res.description)
        return res

    async def _forward(
        self,
        user_id: int,
        message_id: int,
        record: ConversationRecord,
        sender: User | None,
    ) -> RelayOutcome:
        topic_id = record.topic_id
        try:
            res = await self._forward_into(user_id, message_id, topic_id)
        except DeletionSignal as signal:
            return await self._redeliver_after_deletion(
                user_id, message_id, record, sender, signal
            )
        if res.ok:
            return RelayOutcome.DELIVERED

        raise_for_setup(res, method="forwardMessage", chat_id=self._staff_chat_id)
        logger.warning(
            "topic.forward_failed_copying",
            user_id=user_id,
            topic_id=topic_id,
            description=res.description,
        )
        copied = await self._bot.copy_message(
            self._staff_chat_id, user_id, message_id, thread_id=topic_id
        )
        self._require_ok(copied, "copyMessage")
        return RelayOutcome.DELIVERED

    async def _redeliver_after_deletion(
        self,
        user_id: int,
        message_id: int,
        record: ConversationRecord,
        sender: User | None,
        signal: DeletionSignal,
    ) -> RelayOutcome:
        redirected = signal.misplaced_message_id is not None
        logger.warning(
            "topic.forward_redirected" if redirected else "topic.forward_topic_missing",
            user_id=user_id,
            topic_id=signal.topic_id,
            description=signal.description,
        )
        new_record = await self._recreate(user_id, record, sender)
        if not redirected:
            # recreated once; a second deletion here is not retried
            retried = await self._bot.forward_message(
                self._staff_chat_id, user_id, message_id, thread_id=new_record.topic_id
            )
            self._require_ok(retried, "forwardMessage")
            return RelayOutcome.DELIVERED

        await discard_message(
            self._bot, chat_id=self._staff_chat_id, message_id=signal.misplaced_message_id
        )
        # the forward was consumed by the wrong thread; copy instead
        copied = await self._bot.copy_message(
            self._staff_chat_id, user_id, message_id, thread_id=new_record.topic_id
        )
        self._require_ok(copied, "copyMessage")
        return RelayOutcome.DELIVERED

    def _require_ok(self, res: ApiResult, method: str) -> None:
        raise_for_setup(res, method=method, chat_id=self._staff_chat_id)
        if not res.ok:
            raise TransientGatewayError(method, res.description)

    async def set_topic_closed(self, topic_id: int, closed: bool) -> int:
        updated = await self._registry.set_closed_for_topic(topic_id, closed)
        logger.info(
            "topic.status_updated",
            topic_id=topic_id,
            closed=closed,
            updated_count=updated,
        )
        return updated

    async def cleanup(self) -> CleanupReport:
        keys = await self._registry.user_keys()
        report = CleanupReport(total=len(keys))
        batch_size = self._cleanup_batch_size
        for start in range(0, len(keys), batch_size):
            batch = keys[start : start + batch_size]
            outcomes: list[CleanedUser | BaseException | None] = [None] * len(batch)

            async def check(index: int, key: str) -> None:
                try:
                    outcomes[index] = await self._cleanup_one(key)
                except Exception as exc:
                    outcomes[index] = exc

            async with anyio.create_task_group() as tg:
                for index, key in enumerate(batch):
                    tg.start_soon(check, index, key)

            for outcome in outcomes:
                if isinstance(outcome, CleanedUser):
                    report.cleaned.append(outcome)
                    logger.info(
                        "cleanup.user_removed",
                        user_id=outcome.user_id,
                        topic_id=outcome.topic_id,
                    )
                elif isinstance(outcome, BaseException):
                    report.errors += 1
                    logger.error(
                        "cleanup.check_failed",
                        error=str(outcome),
                        error_type=outcome.__class__.__name__,
                    )

            if start + batch_size < len(keys):
                await self._sleep(self._cleanup_pause_s)

        logger.info(
            "cleanup.completed",
            cleaned=len(report.cleaned),
            errors=report.errors,
            total=report.total,
        )
        return report

    async def _cleanup_one(self, key: str) -> CleanedUser | None:
        user_id = user_id_from_key(key)
        if user_id is None:
            return None
        record = await self._registry.get(user_id)
        if record is None or record.topic_id is None:
            return None
        topic_id = record.topic_id
        probe: ProbeResult = await probe_topic(
            self._bot, chat_id=self._staff_chat_id, topic_id=topic_id
        )
        if probe.status is ProbeStatus.DELETED:
            if probe.redirected:
                await discard_message(
                    self._bot, chat_id=self._staff_chat_id, message_id=probe.message_id
                )
            await self._registry.remove(user_id, topic_id)
            await self._verification.reset(user_id)
            self._health.invalidate(topic_id)
            return CleanedUser(user_id=user_id, topic_id=topic_id, title=record.title)
        if probe.status is ProbeStatus.ALIVE:
            self._health.mark_healthy(topic_id)
            await discard_message(
                self._bot, chat_id=self._staff_chat_id, message_id=probe.message_id
            )
        return None
