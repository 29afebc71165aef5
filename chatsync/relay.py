"""Broker-side relay from command channels to broadcast channels.

Clients publish on ``*-command`` and subscribe to ``*-broadcast``; the
relay stamps server time, assigns each joining user a palette color and
rebroadcasts.
"""
import asyncio
import contextlib
import logging
import random
from typing import Callable, Dict, Optional, Tuple

from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from .config import Settings, settings
from .errors import MalformedEventError
from .metrics import EVENTS_DROPPED, EVENTS_RELAYED, RELAY_USERS
from .schemas import ChatEvent, EventKind, now_ms, parse_event

logger = logging.getLogger(__name__)

Rewrite = Callable[[ChatEvent], Optional[ChatEvent]]


class BroadcastRelay:
    def __init__(
        self,
        redis: Redis,
        conf: Settings = settings,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.redis = redis
        self.conf = conf
        self.rng = rng or random.Random()
        self.clock = clock
        self.active_users: Dict[str, str] = {}
        self._routes: Dict[str, Tuple[Rewrite, str]] = {
            conf.MESSAGE_COMMAND_CHANNEL: (self.rewrite_message, conf.MESSAGE_BROADCAST_CHANNEL),
            conf.TYPING_COMMAND_CHANNEL: (self.rewrite_typing, conf.TYPING_BROADCAST_CHANNEL),
        }
        self._pubsub: Optional[PubSub] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._pubsub = self.redis.pubsub()
        await self._pubsub.subscribe(*self._routes)
        self._task = asyncio.create_task(self._run())
        logger.info("Relaying %s", ", ".join(self._routes))

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._task
            self._task = None
        if self._pubsub is not None:
            with contextlib.suppress(Exception):
                await self._pubsub.unsubscribe()
            with contextlib.suppress(Exception):
                await self._pubsub.aclose()
            self._pubsub = None

    async def _run(self) -> None:
        try:
            async for msg in self._pubsub.listen():
                if msg["type"] != "message":
                    continue
                await self.relay(msg["channel"], msg["data"])
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Relay subscription failed")
            return
        logger.info("Relay subscription ended")

    async def relay(self, channel: str, body: str) -> Optional[ChatEvent]:
        route = self._routes.get(channel)
        if route is None:
            return None
        rewrite, target = route
        try:
            event = parse_event(body)
        except MalformedEventError as e:
            EVENTS_DROPPED.labels("malformed").inc()
            logger.error("Dropping malformed command on %s: %s", channel, e)
            return None

        out = rewrite(event)
        if out is None:
            EVENTS_DROPPED.labels("unknown_kind").inc()
            return None
        try:
            await self.redis.publish(target, out.to_wire())
        except Exception as e:
            logger.warning("Rebroadcast of %s to %s failed: %s", out.type.value, target, e)
            return None
        EVENTS_RELAYED.labels(out.type.value).inc()
        return out

    def rewrite_message(self, event: ChatEvent) -> Optional[ChatEvent]:
        sender = event.sender
        text = event.text
        if event.type is EventKind.USER_JOINED:
            color = self.rng.choice(self.conf.COLOR_PALETTE)
            self.active_users[sender] = color
            text = f"{sender} joined the chat"
            logger.info("%s joined with color %s (%d active)", sender, color, len(self.active_users))
        elif event.type is EventKind.MESSAGE:
            color = self.active_users.get(sender, event.color)
        elif event.type is EventKind.USER_LEFT:
            color = self.active_users.pop(sender, event.color)
            text = f"{sender} left the chat"
            logger.info("%s left (%d active)", sender, len(self.active_users))
        else:
            logger.warning("Unknown message command %s from %s", event.type.value, sender)
            return None
        RELAY_USERS.set(len(self.active_users))
        return event.model_copy(update={"date": self.clock(), "color": color, "text": text})

    def rewrite_typing(self, event: ChatEvent) -> Optional[ChatEvent]:
        if not event.is_typing_signal:
            logger.warning("Unknown typing command %s from %s", event.type.value, event.sender)
            return None
        color = self.active_users.get(event.sender) or self.rng.choice(self.conf.COLOR_PALETTE)
        return event.model_copy(update={"date": self.clock(), "color": color})
