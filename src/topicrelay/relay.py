from __future__ import annotations

from typing import Any

from . import notices
from .admin import AdminDispatcher
from .debounce import Spawn
from .errors import RateLimitExceeded, SetupError
from .lifecycle import TopicLifecycle
from .logging import get_logger
from .media_group import MediaGroupAggregator
from .ratelimit import ACTION_MESSAGE, ACTION_VERIFY, RateLimiter
from .telegram.api_models import Update
from .telegram.client import BotClient
from .telegram.parsing import parse_update
from .telegram.types import (
    IncomingCallback,
    IncomingMessage,
    IncomingUpdate,
    TopicStatusChanged,
)
from .verification import VerificationGate

logger = get_logger(__name__)

START_COMMAND = "/start"


class RelayBot:
    """Routes inbound updates to the verification gate, the topic lifecycle
    and the staff command dispatcher.

    ``handle_update`` never raises: failures on the private path become one
    generic notice to the user, configuration errors are also reported to the
    staff chat.
    """

    def __init__(
        self,
        *,
        bot: BotClient,
        staff_chat_id: int,
        verification: VerificationGate,
        lifecycle: TopicLifecycle,
        admin: AdminDispatcher,
        aggregator: MediaGroupAggregator,
        rate_limiter: RateLimiter,
        spawn: Spawn,
    ) -> None:
        self._bot = bot
        self._staff_chat_id = staff_chat_id
        self._verification = verification
        self._lifecycle = lifecycle
        self._admin = admin
        self._aggregator = aggregator
        self._rate_limiter = rate_limiter
        self._spawn = spawn

    async def handle_update(
        self, update: Update | dict[str, Any] | IncomingUpdate
    ) -> None:
        if isinstance(update, (Update, dict)):
            event = parse_update(update)
        else:
            event = update
        if event is None:
            return

        if isinstance(event, IncomingCallback):
            await self._handle_callback(event)
            return

        self._spawn(self._aggregator.maybe_sweep)

        if isinstance(event, TopicStatusChanged):
            if event.chat_id == self._staff_chat_id:
                await self._lifecycle.set_topic_closed(event.thread_id, event.closed)
            return

        if event.is_private:
            await self._handle_private_safely(event)
            return

        if event.chat_id == self._staff_chat_id:
            await self._handle_staff(event)

    async def _handle_callback(self, query: IncomingCallback) -> None:
        try:
            handled = await self._verification.handle_callback(query)
        except Exception as exc:
            logger.error(
                "relay.callback_failed",
                user_id=query.sender.id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            await self._bot.answer_callback_query(
                query.callback_query_id, notices.CHALLENGE_ERROR, show_alert=True
            )
            return
        if not handled:
            logger.debug("relay.callback_ignored", data=query.data)

    async def _handle_private_safely(self, msg: IncomingMessage) -> None:
        try:
            await self.handle_private(msg)
        except SetupError as exc:
            logger.error(
                "relay.setup_error",
                user_id=msg.chat_id,
                error=str(exc),
            )
            await self._bot.send_message(msg.chat_id, notices.SYSTEM_BUSY)
            await self._bot.send_message(
                self._staff_chat_id,
                notices.STAFF_SETUP_ERROR.format(detail=str(exc)),
                parse_mode="Markdown",
            )
        except Exception as exc:
            logger.error(
                "relay.private_message_failed",
                user_id=msg.chat_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            await self._bot.send_message(msg.chat_id, notices.SYSTEM_BUSY)

    async def handle_private(self, msg: IncomingMessage) -> None:
        user_id = msg.chat_id
        try:
            await self._rate_limiter.require(user_id, ACTION_MESSAGE)
        except RateLimitExceeded:
            await self._bot.send_message(user_id, notices.RATE_LIMITED)
            return

        text = msg.text.strip()
        is_start = text == START_COMMAND
        if msg.text.startswith("/") and not is_start:
            return

        if await self._verification.is_banned(user_id):
            return

        if await self._verification.verified(user_id) is None:
            try:
                await self._rate_limiter.require(user_id, ACTION_VERIFY)
            except RateLimitExceeded:
                await self._bot.send_message(user_id, notices.VERIFY_RATE_LIMITED)
                return
            await self._verification.begin(
                user_id, None if is_start else msg.message_id
            )
            return

        outcome = await self._lifecycle.relay_to_topic(msg)
        logger.debug("relay.private_relayed", user_id=user_id, outcome=str(outcome))

    async def _handle_staff(self, msg: IncomingMessage) -> None:
        if msg.is_service or msg.from_bot:
            return
        if msg.thread_id is None and not msg.text:
            return
        try:
            await self._admin.dispatch(msg)
        except Exception as exc:
            logger.error(
                "relay.staff_message_failed",
                topic_id=msg.thread_id,
                message_id=msg.message_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
