"""Telegram Bot API client and update parsing."""

from .client import ApiResult, BotClient, TelegramClient
from .parsing import parse_update
from .types import (
    IncomingCallback,
    IncomingMessage,
    IncomingUpdate,
    TopicStatusChanged,
)

__all__ = [
    "ApiResult",
    "BotClient",
    "IncomingCallback",
    "IncomingMessage",
    "IncomingUpdate",
    "TelegramClient",
    "TopicStatusChanged",
    "parse_update",
]
