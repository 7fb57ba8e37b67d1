from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .api_models import Message, User


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    chat_id: int
    chat_type: str
    message_id: int
    text: str
    sender: User | None
    thread_id: int | None
    media_group_id: str | None
    message: Message
    raw: dict[str, Any] | None = None

    @property
    def is_private(self) -> bool:
        return self.chat_type == "private"

    @property
    def is_service(self) -> bool:
        return (
            self.message.forum_topic_created is not None
            or self.message.forum_topic_edited is not None
        )

    @property
    def from_bot(self) -> bool:
        return self.sender is not None and self.sender.is_bot


@dataclass(frozen=True, slots=True)
class IncomingCallback:
    callback_query_id: str
    sender: User
    chat_id: int | None
    message_id: int | None
    data: str
    raw: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class TopicStatusChanged:
    chat_id: int
    thread_id: int
    closed: bool


IncomingUpdate = IncomingMessage | IncomingCallback | TopicStatusChanged
