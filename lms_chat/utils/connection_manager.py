import asyncio
from typing import Awaitable, Callable, List, Optional, Union

from loguru import logger
from redis.exceptions import RedisError

from lms_chat.utils.realtime_bus import Bus, Subscription, user_channel

EventHandler = Callable[[Union[str, bytes]], Awaitable[None]]


class ConnectionManager:
    """Owns the single live subscription of one authenticated user.

    ``connect()`` joins ``user:{id}`` and announces presence; ``close()``
    tears everything down. Connecting twice is a no-op, so a widget never
    registers a second listener for the same user. Failures are logged and
    leave the manager disconnected until the next ``connect()``.
    """

    def __init__(
        self,
        bus: Bus,
        user_id: str,
        on_event: EventHandler,
        presence_ttl: int = 60,
        heartbeat_interval: float = 30.0,
    ) -> None:
        self._bus = bus
        self._user_id = user_id
        self._on_event = on_event
        self._presence_ttl = presence_ttl
        self._heartbeat_interval = heartbeat_interval
        self._subscription: Optional[Subscription] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def is_connected(self) -> bool:
        return self._subscription is not None

    async def connect(self) -> bool:
        if self._subscription is not None:
            return True
        channel = user_channel(self._user_id)
        try:
            subscription = await self._bus.subscribe(channel, self._dispatch)
        except (RedisError, OSError) as exc:
            logger.warning("Live connection for user {} failed: {}", self._user_id, exc)
            return False

        self._subscription = subscription
        await self._announce()
        self._tasks = [
            asyncio.create_task(subscription.run(), name=f"live:{channel}"),
            asyncio.create_task(self._presence_heartbeat(), name=f"presence:{self._user_id}"),
        ]
        logger.info("Joined live channel {}", channel)
        return True

    async def _announce(self) -> None:
        try:
            await self._bus.announce_presence(self._user_id, ttl_seconds=self._presence_ttl)
        except (RedisError, OSError) as exc:
            logger.warning("Presence announce for user {} failed: {}", self._user_id, exc)

    async def _presence_heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            await self._announce()

    async def _dispatch(self, raw: Union[str, bytes]) -> None:
        if self._subscription is None:
            return
        try:
            await self._on_event(raw)
        except Exception:
            logger.exception("Live event handler failed for user {}", self._user_id)

    async def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if subscription is not None:
            await subscription.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if subscription is not None:
            logger.info("Left live channel {}", user_channel(self._user_id))
