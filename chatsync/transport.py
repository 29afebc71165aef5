"""Publish/subscribe transport used by the connection manager.

The manager only sees the ``Transport`` contract. ``RedisTransport``
implements it on top of redis pub/sub; tests substitute a fake.
"""
import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Optional

from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from .config import Settings, settings
from .redis_conn import create_redis

logger = logging.getLogger(__name__)

Handler = Callable[[str], None]
LifecycleCallback = Callable[[], Awaitable[None]]
ErrorCallback = Callable[[str], Awaitable[None]]


class Transport(ABC):
    def __init__(self) -> None:
        self.on_connected: Optional[LifecycleCallback] = None
        self.on_disconnected: Optional[LifecycleCallback] = None
        self.on_error: Optional[ErrorCallback] = None

    @abstractmethod
    async def activate(self) -> None:
        """Start connecting; completion is reported through ``on_connected``."""

    @abstractmethod
    async def deactivate(self) -> None:
        ...

    @abstractmethod
    async def subscribe(self, channel: str, handler: Handler) -> None:
        ...

    @abstractmethod
    async def publish(self, channel: str, body: str) -> None:
        ...

    async def _notify_connected(self) -> None:
        if self.on_connected is not None:
            await self.on_connected()

    async def _notify_disconnected(self) -> None:
        if self.on_disconnected is not None:
            await self.on_disconnected()

    async def _notify_error(self, cause: str) -> None:
        if self.on_error is not None:
            await self.on_error(cause)


class RedisTransport(Transport):
    def __init__(self, redis: Optional[Redis] = None, conf: Settings = settings):
        super().__init__()
        self._conf = conf
        self._redis = redis
        self._owns_redis = redis is None
        self._pubsub: Optional[PubSub] = None
        self._handlers: Dict[str, Handler] = {}
        self._open_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def active(self) -> bool:
        return self._pubsub is not None or self._open_task is not None

    async def activate(self) -> None:
        if self.active:
            return
        self._closing = False
        if self._redis is None:
            self._redis = create_redis(self._conf)
        self._open_task = asyncio.create_task(self._open())

    async def _open(self) -> None:
        try:
            await self._redis.ping()
            self._pubsub = self._redis.pubsub()
        except Exception as e:
            self._open_task = None
            logger.error("Broker at %s unreachable: %s", self._conf.REDIS_URL, e)
            await self._notify_error(f"could not reach the broker: {e}")
            return
        self._open_task = None
        await self._notify_connected()

    async def subscribe(self, channel: str, handler: Handler) -> None:
        if self._pubsub is None:
            raise ConnectionError("transport is not active")
        self._handlers[channel] = handler
        await self._pubsub.subscribe(channel)
        # listen() returns at once while nothing is subscribed
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read())

    async def publish(self, channel: str, body: str) -> None:
        if self._pubsub is None:
            raise ConnectionError("transport is not active")
        await self._redis.publish(channel, body)

    async def _read(self) -> None:
        try:
            async for msg in self._pubsub.listen():
                if msg["type"] != "message":
                    continue
                handler = self._handlers.get(msg["channel"])
                if handler is None:
                    continue
                try:
                    handler(msg["data"])
                except Exception:
                    logger.exception("Handler for %s failed", msg["channel"])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._closing:
                logger.error("Broker connection lost: %s", e)
                await self._release()
                await self._notify_error(f"broker connection lost: {e}")
            return
        if not self._closing:
            logger.info("Broker closed the subscription")
            # the next activate() must open a fresh subscription
            await self._release()
            await self._notify_disconnected()

    async def _release(self) -> None:
        self._reader_task = None
        self._handlers.clear()
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe()
            with contextlib.suppress(Exception):
                await pubsub.aclose()

    async def deactivate(self) -> None:
        self._closing = True
        current = asyncio.current_task()
        for task in (self._open_task, self._reader_task):
            if task is None or task is current:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._open_task = None
        await self._release()
        if self._owns_redis and self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.aclose()
            self._redis = None
