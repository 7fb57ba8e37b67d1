from __future__ import annotations

import msgspec

__all__ = [
    "Animation",
    "Audio",
    "CallbackQuery",
    "Chat",
    "Document",
    "Message",
    "PhotoSize",
    "Update",
    "User",
    "Video",
]


class User(msgspec.Struct, forbid_unknown_fields=False):
    id: int
    is_bot: bool = False
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class Chat(msgspec.Struct, forbid_unknown_fields=False):
    id: int
    type: str
    is_forum: bool | None = None


class PhotoSize(msgspec.Struct, forbid_unknown_fields=False):
    file_id: str
    width: int = 0
    height: int = 0
    file_size: int | None = None


class Document(msgspec.Struct, forbid_unknown_fields=False):
    file_id: str
    file_name: str | None = None
    mime_type: str | None = None


class Video(msgspec.Struct, forbid_unknown_fields=False):
    file_id: str


class Audio(msgspec.Struct, forbid_unknown_fields=False):
    file_id: str


class Animation(msgspec.Struct, forbid_unknown_fields=False):
    file_id: str


class Message(msgspec.Struct, forbid_unknown_fields=False):
    message_id: int
    chat: Chat
    from_: User | None = msgspec.field(default=None, name="from")
    message_thread_id: int | None = None
    is_topic_message: bool | None = None
    text: str | None = None
    caption: str | None = None
    media_group_id: str | None = None
    photo: list[PhotoSize] | None = None
    video: Video | None = None
    document: Document | None = None
    audio: Audio | None = None
    animation: Animation | None = None
    forum_topic_created: dict | None = None
    forum_topic_edited: dict | None = None
    forum_topic_closed: dict | None = None
    forum_topic_reopened: dict | None = None


class CallbackQuery(msgspec.Struct, forbid_unknown_fields=False):
    id: str
    from_: User = msgspec.field(name="from")
    message: Message | None = None
    data: str | None = None


class Update(msgspec.Struct, forbid_unknown_fields=False):
    update_id: int = 0
    message: Message | None = None
    callback_query: CallbackQuery | None = None
