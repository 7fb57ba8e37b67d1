from __future__ import annotations

from collections.abc import Awaitable, Callable

from . import notices
from .lifecycle import TopicLifecycle, render_cleanup_report
from .logging import get_logger
from .media_group import Direction, MediaGroupAggregator
from .registry import ConversationRegistry
from .telegram.client import BotClient
from .telegram.types import IncomingMessage
from .verification import VerificationGate

logger = get_logger(__name__)

Command = Callable[[int, int | None], Awaitable[None]]


class AdminDispatcher:
    """Handles staff messages posted in the forum chat."""

    def __init__(
        self,
        *,
        bot: BotClient,
        staff_chat_id: int,
        registry: ConversationRegistry,
        verification: VerificationGate,
        lifecycle: TopicLifecycle,
        aggregator: MediaGroupAggregator,
        cleanup_max_display: int = 20,
    ) -> None:
        self._bot = bot
        self._staff_chat_id = staff_chat_id
        self._registry = registry
        self._verification = verification
        self._lifecycle = lifecycle
        self._aggregator = aggregator
        self._cleanup_max_display = cleanup_max_display
        self._commands: dict[str, Command] = {
            "/close": self._close,
            "/open": self._open,
            "/reset": self._reset,
            "/trust": self._trust,
            "/ban": self._ban,
            "/unban": self._unban,
            "/info": self._info,
        }

    async def _notify(self, thread_id: int | None, text: str) -> None:
        await self._bot.send_message(
            self._staff_chat_id, text, thread_id=thread_id, parse_mode="Markdown"
        )

    async def dispatch(self, msg: IncomingMessage) -> None:
        text = msg.text.strip()
        thread_id = msg.thread_id

        if text == "/cleanup":
            await self.cleanup(thread_id)
            return

        if thread_id is None:
            return
        user_id = await self._registry.find_user_by_topic(thread_id)
        if user_id is None:
            logger.debug("admin.unknown_topic", topic_id=thread_id)
            return

        command = self._commands.get(text)
        if command is not None:
            logger.info("admin.command", command=text, user_id=user_id, topic_id=thread_id)
            await command(user_id, thread_id)
            return

        await self.relay_to_user(msg, user_id)

    async def relay_to_user(self, msg: IncomingMessage, user_id: int) -> None:
        if msg.media_group_id is not None:
            await self._aggregator.add(
                msg, direction=Direction.TO_USER, target_chat_id=user_id
            )
            return
        res = await self._bot.copy_message(user_id, msg.chat_id, msg.message_id)
        if not res.ok:
            logger.warning(
                "admin.reply_failed",
                user_id=user_id,
                message_id=msg.message_id,
                description=res.description,
            )

    async def cleanup(self, thread_id: int | None) -> None:
        await self._notify(thread_id, notices.STAFF_CLEANUP_STARTED)
        try:
            report = await self._lifecycle.cleanup()
        except Exception as exc:
            logger.error(
                "admin.cleanup_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            await self._notify(thread_id, notices.STAFF_CLEANUP_FAILED)
            return
        await self._notify(
            thread_id,
            render_cleanup_report(report, max_display=self._cleanup_max_display),
        )

    async def _close(self, user_id: int, thread_id: int | None) -> None:
        if await self._registry.close(user_id) is None or thread_id is None:
            return
        await self._bot.close_forum_topic(self._staff_chat_id, thread_id)
        await self._notify(thread_id, notices.STAFF_CLOSED)

    async def _open(self, user_id: int, thread_id: int | None) -> None:
        if await self._registry.reopen(user_id) is None or thread_id is None:
            return
        await self._bot.reopen_forum_topic(self._staff_chat_id, thread_id)
        await self._notify(thread_id, notices.STAFF_OPENED)

    async def _reset(self, user_id: int, thread_id: int | None) -> None:
        await self._verification.reset(user_id)
        await self._notify(thread_id, notices.STAFF_RESET)

    async def _trust(self, user_id: int, thread_id: int | None) -> None:
        await self._verification.trust(user_id)
        await self._notify(thread_id, notices.STAFF_TRUSTED)

    async def _ban(self, user_id: int, thread_id: int | None) -> None:
        await self._verification.ban(user_id)
        await self._notify(thread_id, notices.STAFF_BANNED)

    async def _unban(self, user_id: int, thread_id: int | None) -> None:
        await self._verification.unban(user_id)
        await self._notify(thread_id, notices.STAFF_UNBANNED)

    async def _info(self, user_id: int, thread_id: int | None) -> None:
        record = await self._registry.get(user_id)
        verified = await self._verification.verified(user_id)
        banned = await self._verification.is_banned(user_id)
        if verified is None:
            verification = "❌ not verified"
        elif verified.trusted:
            verification = "🌟 trusted"
        else:
            verification = "✅ verified"
        text = notices.STAFF_INFO.format(
            user_id=user_id,
            topic_id=thread_id,
            title=(record.title if record is not None and record.title else "unknown"),
            verification=verification,
            ban="🚫 banned" if banned else "✅ active",
        )
        await self._notify(thread_id, text)
