from __future__ import annotations

from typing import Any

import msgspec

from ..logging import get_logger
from .api_models import CallbackQuery, Message, Update
from .types import (
    IncomingCallback,
    IncomingMessage,
    IncomingUpdate,
    TopicStatusChanged,
)

logger = get_logger(__name__)


def parse_update(update: Update | dict[str, Any]) -> IncomingUpdate | None:
    raw_message: dict[str, Any] | None = None
    raw_callback: dict[str, Any] | None = None
    if isinstance(update, dict):
        if isinstance(update.get("message"), dict):
            raw_message = update["message"]
        if isinstance(update.get("callback_query"), dict):
            raw_callback = update["callback_query"]
        try:
            update = msgspec.convert(update, type=Update)
        except msgspec.ValidationError as exc:
            logger.warning("parsing.invalid_update", error=str(exc))
            return None

    if update.callback_query is not None:
        return _parse_callback_query(update.callback_query, raw=raw_callback)
    if update.message is not None:
        return _parse_message(update.message, raw=raw_message)
    return None


def _parse_message(
    msg: Message, *, raw: dict[str, Any] | None = None
) -> IncomingMessage | TopicStatusChanged:
    thread_id = msg.message_thread_id
    if thread_id is not None:
        if msg.forum_topic_closed is not None:
            return TopicStatusChanged(chat_id=msg.chat.id, thread_id=thread_id, closed=True)
        if msg.forum_topic_reopened is not None:
            return TopicStatusChanged(
                chat_id=msg.chat.id, thread_id=thread_id, closed=False
            )
    text = msg.text if msg.text is not None else ""
    return IncomingMessage(
        chat_id=msg.chat.id,
        chat_type=msg.chat.type,
        message_id=msg.message_id,
        text=text,
        sender=msg.from_,
        thread_id=thread_id,
        media_group_id=msg.media_group_id,
        message=msg,
        raw=raw,
    )


def _parse_callback_query(
    query: CallbackQuery, *, raw: dict[str, Any] | None = None
) -> IncomingCallback | None:
    if not query.data:
        return None
    msg = query.message
    return IncomingCallback(
        callback_query_id=query.id,
        sender=query.from_,
        chat_id=msg.chat.id if msg is not None else None,
        message_id=msg.message_id if msg is not None else None,
        data=query.data,
        raw=raw,
    )
