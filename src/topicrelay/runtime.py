from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import anyio
from anyio.abc import TaskGroup

from .admin import AdminDispatcher
from .debounce import Spawn
from .health import ThreadHealthCache
from .lifecycle import RelayOutcome, TopicLifecycle
from .logging import get_logger
from .media_group import MediaGroupAggregator
from .ratelimit import ACTION_MESSAGE, ACTION_VERIFY, RateLimiter, RateLimitRule
from .registry import ConversationRegistry
from .relay import RelayBot
from .settings import RelaySettings
from .store import KeyValueStore, MemoryStore, SqliteStore
from .telegram.api_models import User
from .telegram.client import BotClient, TelegramClient
from .verification import Redeliver, VerificationGate

logger = get_logger(__name__)

ALLOWED_UPDATES = ["message", "callback_query"]
POLL_TIMEOUT_S = 50
POLL_RETRY_DELAY_S = 2.0


@dataclass(slots=True)
class RelayRuntime:
    relay: RelayBot
    bot: BotClient
    store: KeyValueStore
    registry: ConversationRegistry
    verification: VerificationGate
    lifecycle: TopicLifecycle
    aggregator: MediaGroupAggregator


def open_store(settings: RelaySettings) -> KeyValueStore:
    if settings.store.backend == "memory":
        return MemoryStore()
    return SqliteStore(settings.store.path)


def build_runtime(
    settings: RelaySettings,
    *,
    spawn: Spawn,
    bot: BotClient | None = None,
    store: KeyValueStore | None = None,
) -> RelayRuntime:
    if bot is None:
        bot = TelegramClient(
            settings.bot_token.get_secret_value(),
            api_base=settings.api_base,
            timeout_s=settings.api_timeout_s,
        )
    if store is None:
        store = open_store(settings)
    staff_chat_id = settings.staff_chat_id

    registry = ConversationRegistry(store, bot, staff_chat_id=staff_chat_id)
    vcfg = settings.verification
    verification = VerificationGate(
        store,
        bot,
        challenge_ttl_s=vcfg.challenge_ttl_s,
        verified_ttl_s=vcfg.verified_ttl_s,
        challenge_id_length=vcfg.challenge_id_length,
        button_columns=vcfg.button_columns,
        redelivery_marker_ttl_s=vcfg.redelivery_marker_ttl_s,
    )
    mcfg = settings.media_groups
    aggregator = MediaGroupAggregator(
        store,
        bot,
        spawn=spawn,
        settle_delay_s=mcfg.settle_delay_s,
        buffer_ttl_s=mcfg.buffer_ttl_s,
        stale_after_s=mcfg.stale_after_s,
        sweep_interval_s=mcfg.sweep_interval_s,
        caption_limit=mcfg.caption_limit,
    )
    tcfg = settings.topics
    lifecycle = TopicLifecycle(
        registry=registry,
        store=store,
        bot=bot,
        staff_chat_id=staff_chat_id,
        health=ThreadHealthCache(ttl_s=tcfg.health_ttl_s),
        aggregator=aggregator,
        verification=verification,
        max_repair_attempts=tcfg.max_repair_attempts,
        repair_window_s=tcfg.repair_window_s,
        max_name_length=tcfg.max_name_length,
        max_title_length=tcfg.max_title_length,
        cleanup_batch_size=settings.cleanup.batch_size,
        cleanup_pause_s=settings.cleanup.batch_pause_s,
    )
    verification.set_redeliver(_redeliver_via(lifecycle))

    rcfg = settings.rate_limits
    rate_limiter = RateLimiter(
        store,
        {
            ACTION_MESSAGE: RateLimitRule(rcfg.message_limit, rcfg.message_window_s),
            ACTION_VERIFY: RateLimitRule(rcfg.verify_limit, rcfg.verify_window_s),
        },
    )
    admin = AdminDispatcher(
        bot=bot,
        staff_chat_id=staff_chat_id,
        registry=registry,
        verification=verification,
        lifecycle=lifecycle,
        aggregator=aggregator,
        cleanup_max_display=settings.cleanup.max_display,
    )
    relay = RelayBot(
        bot=bot,
        staff_chat_id=staff_chat_id,
        verification=verification,
        lifecycle=lifecycle,
        admin=admin,
        aggregator=aggregator,
        rate_limiter=rate_limiter,
        spawn=spawn,
    )
    return RelayRuntime(
        relay=relay,
        bot=bot,
        store=store,
        registry=registry,
        verification=verification,
        lifecycle=lifecycle,
        aggregator=aggregator,
    )


def _redeliver_via(lifecycle: TopicLifecycle) -> Redeliver:
    async def redeliver(user_id: int, message_id: int, sender: User | None) -> bool:
        outcome = await lifecycle.relay(user_id, message_id, sender=sender)
        # CLOSED and BUSY already told the user why nothing was delivered
        return outcome in (RelayOutcome.DELIVERED, RelayOutcome.QUEUED)

    return redeliver


async def poll_updates(
    bot: BotClient,
    *,
    offset: int | None = None,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
) -> AsyncIterator[dict[str, Any]]:
    while True:
        res = await bot.get_updates(
            offset=offset,
            timeout_s=POLL_TIMEOUT_S,
            allowed_updates=ALLOWED_UPDATES,
        )
        if not res.ok or not isinstance(res.result, list):
            logger.info("loop.get_updates.failed", description=res.description)
            await sleep(POLL_RETRY_DELAY_S)
            continue
        for update in res.result:
            if not isinstance(update, dict):
                continue
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                offset = update_id + 1
            yield update


async def _handle_safely(relay: RelayBot, update: dict[str, Any]) -> None:
    try:
        await relay.handle_update(update)
    except Exception as exc:
        logger.error(
            "loop.update_failed",
            update_id=update.get("update_id"),
            error=str(exc),
            error_type=exc.__class__.__name__,
        )


async def run_polling(settings: RelaySettings) -> None:
    async with anyio.create_task_group() as tg:
        runtime = build_runtime(settings, spawn=tg.start_soon)
        logger.info(
            "loop.started",
            staff_chat_id=settings.staff_chat_id,
            store=settings.store.backend,
        )
        try:
            await _serve(runtime, tg)
        finally:
            await runtime.bot.close()
            if isinstance(runtime.store, SqliteStore):
                runtime.store.close()


async def _serve(runtime: RelayRuntime, tg: TaskGroup) -> None:
    async for update in poll_updates(runtime.bot):
        tg.start_soon(_handle_safely, runtime.relay, update)
