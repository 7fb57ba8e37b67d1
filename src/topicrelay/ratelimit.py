from __future__ import annotations

import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import msgspec

from .errors import RateLimitExceeded
from .logging import get_logger
from .store import KeyValueStore, get_json, put_json

logger = get_logger(__name__)

ACTION_MESSAGE = "message"
ACTION_VERIFY = "verify"


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    limit: int
    window_s: int


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_in_s: float


class _Window(msgspec.Struct):
    count: int
    reset_at: float


def rate_limit_key(user_id: int, action: str) -> str:
    return f"ratelimit:{action}:{user_id}"


class RateLimiter:
    """Fixed-window counters keyed by (user, action).

    The window starts with the first counted action and is not extended by
    later ones; the stored counter expires with the window.
    """

    def __init__(
        self,
        store: KeyValueStore,
        rules: Mapping[str, RateLimitRule],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._rules = dict(rules)
        self._clock = clock

    def rule_for(self, action: str) -> RateLimitRule:
        try:
            return self._rules[action]
        except KeyError:
            raise ValueError(f"no rate limit rule for action {action!r}") from None

    async def check(self, user_id: int, action: str) -> RateLimitDecision:
        rule = self.rule_for(action)
        key = rate_limit_key(user_id, action)
        now = self._clock()
        window = await get_json(self._store, key, _Window)
        if window is None or window.reset_at <= now:
            window = _Window(count=0, reset_at=now + rule.window_s)
        reset_in = window.reset_at - now
        if window.count >= rule.limit:
            return RateLimitDecision(allowed=False, remaining=0, reset_in_s=reset_in)
        window.count += 1
        # expire with the window, not a full window after the latest hit
        await put_json(self._store, key, window, ttl_s=math.ceil(reset_in))
        return RateLimitDecision(
            allowed=True, remaining=rule.limit - window.count, reset_in_s=reset_in
        )

    async def require(self, user_id: int, action: str) -> RateLimitDecision:
        decision = await self.check(user_id, action)
        if not decision.allowed:
            logger.info(
                "ratelimit.exceeded",
                user_id=user_id,
                action=action,
                reset_in_s=round(decision.reset_in_s, 1),
            )
            raise RateLimitExceeded(action, user_id, decision.reset_in_s)
        return decision
