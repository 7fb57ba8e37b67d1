"""Last-writer-wins delayed actions.

Every write to some stored state bumps a version and schedules a delayed
action carrying that version. When an action fires it reloads the state and
only proceeds if the version still matches, so only the action scheduled by
the latest write does any work.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Generic, TypeVar

import anyio

from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Spawn = Callable[..., Any]


class LatestOnlyScheduler(Generic[T]):
    def __init__(
        self,
        *,
        spawn: Spawn,
        delay_s: float,
        load: Callable[[str], Awaitable[T | None]],
        version_of: Callable[[T], Hashable],
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        label: str = "debounce",
    ) -> None:
        self._spawn = spawn
        self._delay_s = delay_s
        self._load = load
        self._version_of = version_of
        self._sleep = sleep
        self._label = label

    def schedule(
        self,
        key: str,
        version: Hashable,
        action: Callable[[str, T], Awaitable[None]],
    ) -> None:
        self._spawn(self.fire, key, version, action)

    async def fire(
        self,
        key: str,
        version: Hashable,
        action: Callable[[str, T], Awaitable[None]],
    ) -> bool:
        await self._sleep(self._delay_s)
        state = await self._load(key)
        if state is None:
            logger.debug(f"{self._label}.gone", key=key)
            return False
        if self._version_of(state) != version:
            logger.debug(
                f"{self._label}.superseded",
                key=key,
                scheduled=version,
                current=self._version_of(state),
            )
            return False
        await action(key, state)
        return True
