import asyncio
import json
from typing import Awaitable, Callable, Optional, Protocol, Union

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError

MessageHandler = Callable[[Union[str, bytes]], Awaitable[None]]

PRESENCE_CHANNEL = "presence"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class Subscription(Protocol):

    async def run(self) -> None: ...

    async def cancel(self) -> None: ...


class Bus(Protocol):
    """Pub/sub transport carrying live chat events."""

    enabled: bool

    async def publish(self, channel: str, message: str) -> None: ...

    async def subscribe(self, channel: str, on_message: MessageHandler) -> Subscription: ...

    async def announce_presence(self, user_id: str, ttl_seconds: int = 60) -> None: ...

    async def aclose(self) -> None: ...


class NoopSubscription:

    async def run(self) -> None:
        await asyncio.Future()

    async def cancel(self) -> None:
        return


class NoopBus:
    """Used when no transport is configured: no live updates, REST only."""

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def subscribe(self, channel: str, on_message: MessageHandler) -> NoopSubscription:
        return NoopSubscription()

    async def announce_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        return

    async def aclose(self) -> None:
        return


class RedisSubscription:

    def __init__(self, pubsub, channel: str, on_message: MessageHandler) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._on_message = on_message
        self._running = True

    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except RedisError as exc:
                logger.warning("Live subscription on {} failed: {}", self._channel, exc)
                await asyncio.sleep(0.5)
                continue
            if msg and msg.get("type") == "message":
                # raw frame; the handler owns decoding
                await self._on_message(msg.get("data"))

    async def cancel(self) -> None:
        self._running = False
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except RedisError as exc:
            logger.debug("Unsubscribe from {} failed: {}", self._channel, exc)


class RedisBus:

    enabled = True

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None) -> None:
        if client is None and not url:
            raise ValueError("RedisBus needs a url or a client")
        self._redis = client if client is not None else redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: MessageHandler) -> RedisSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel, on_message)

    async def announce_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        await self._redis.set(f"presence:{user_id}", "online", ex=ttl_seconds)
        await self._redis.publish(PRESENCE_CHANNEL, json.dumps({"type": "join_chat", "data": {"userId": user_id}}))

    async def aclose(self) -> None:
        await self._redis.aclose()


def create_bus(url: Optional[str]) -> Union[RedisBus, NoopBus]:
    """Build the transport for one session; the caller owns it and must ``aclose()`` it."""
    if not url:
        logger.info("REDIS_URL not set; live updates disabled")
        return NoopBus()
    return RedisBus(url)
