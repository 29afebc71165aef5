"""Typing indicators.

Two independent halves share this tracker:

* the local half turns raw input notifications into TYPING_START /
  TYPING_STOP events, debounced and with an inactivity auto-stop;
* the remote half keeps who else is typing, keyed by username, and
  expires entries whose sender went quiet without a TYPING_STOP.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from .config import Settings, settings
from .connection import ConnectionManager
from .errors import MalformedEventError
from .metrics import EVENTS_DROPPED
from .schemas import ChatEvent, EventKind, TypingPresenceEntry, parse_event
from .timers import Debouncer, Timer

logger = logging.getLogger(__name__)

PresenceListener = Callable[[], None]


@dataclass
class LocalTypingState:
    is_typing: bool = False
    last_keystroke_at: int = 0


class TypingPresenceTracker:
    def __init__(
        self,
        connection: ConnectionManager,
        conf: Settings = settings,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.connection = connection
        self.conf = conf
        self.clock = clock or connection.clock
        self.local = LocalTypingState()
        self._entries: Dict[str, TypingPresenceEntry] = {}
        self._listeners: List[PresenceListener] = []
        self._debouncer: Debouncer[str] = Debouncer(
            conf.TYPING_DEBOUNCE_MS, self._on_settled_input, name="typing-debounce"
        )
        self._inactivity = Timer(conf.TYPING_TIMEOUT_MS, self._on_inactivity, name="typing-inactivity")

    @property
    def expiry_ms(self) -> int:
        return self.conf.TYPING_TIMEOUT_MS + self.conf.TYPING_GRACE_MS

    @property
    def timers_armed(self) -> bool:
        return self._debouncer.pending or self._inactivity.armed

    @property
    def idle_ms(self) -> Optional[int]:
        """Time since the last input notification, or None before any input."""
        if not self.local.last_keystroke_at:
            return None
        return self.clock() - self.local.last_keystroke_at

    def add_listener(self, listener: PresenceListener) -> None:
        self._listeners.append(listener)

    # -- local side --
    def on_input(self, text: str) -> None:
        """Raw notification that the input box now holds ``text``."""
        self.local.last_keystroke_at = self.clock()
        self._debouncer.push(text)

    async def _on_settled_input(self, text: str) -> None:
        if not self.connection.connected:
            return
        typing_now = len(text) > 0
        if typing_now != self.local.is_typing:
            self.local.is_typing = typing_now
            await self._publish_local(typing_now)
        if self.local.is_typing:
            self._inactivity.start()
        else:
            self._inactivity.cancel()

    async def _on_inactivity(self) -> None:
        if not self.local.is_typing:
            return
        logger.debug("No input for %d ms, stopping typing", self.conf.TYPING_TIMEOUT_MS)
        self.local.is_typing = False
        await self._publish_local(False)

    async def force_stop(self) -> None:
        """Emit TYPING_STOP right away if the local user is typing."""
        self._debouncer.cancel()
        if self.local.is_typing:
            self.local.is_typing = False
            await self._publish_local(False)
        self._inactivity.cancel()

    def cancel_local(self) -> None:
        self._debouncer.cancel()
        self._inactivity.cancel()
        self.local.is_typing = False

    async def _publish_local(self, is_typing: bool) -> None:
        kind = EventKind.TYPING_START if is_typing else EventKind.TYPING_STOP
        await self.connection.publish(
            self.conf.TYPING_COMMAND_CHANNEL,
            ChatEvent(
                sender=self.connection.username,
                text=kind.value,
                date=self.clock(),
                color=self.connection.local_color,
                type=kind,
            ),
        )

    # -- remote side --
    @property
    def typing_users(self) -> Tuple[TypingPresenceEntry, ...]:
        return tuple(self._entries.values())

    def on_remote_event(self, body: Union[str, bytes]) -> bool:
        try:
            event = parse_event(body)
        except MalformedEventError as e:
            EVENTS_DROPPED.labels("malformed").inc()
            logger.error("Dropping malformed typing event: %s", e)
            return False
        if not event.is_typing_signal:
            EVENTS_DROPPED.labels("misrouted").inc()
            logger.warning("Dropping %s on the typing channel", event.type.value)
            return False
        if event.sender == self.connection.username:
            return False

        now = self.clock()
        if event.type is EventKind.TYPING_START:
            self._entries[event.sender] = TypingPresenceEntry(
                username=event.sender, color=event.color, last_seen=now
            )
        else:
            self._entries.pop(event.sender, None)
        self.sweep(now)
        self._notify()
        return True

    def sweep(self, now: Optional[int] = None) -> int:
        now = self.clock() if now is None else now
        stale = [
            name
            for name, entry in self._entries.items()
            if now - entry.last_seen >= self.expiry_ms
        ]
        for name in stale:
            del self._entries[name]
        if stale:
            logger.debug("Expired typing entries: %s", ", ".join(stale))
        return len(stale)

    def reset(self) -> None:
        if self._entries:
            self._entries.clear()
            self._notify()

    def summary_text(self) -> str:
        names = [entry.username for entry in self._entries.values()]
        if not names:
            return ""
        if len(names) == 1:
            return f"{names[0]} is typing…"
        if len(names) == 2:
            return f"{names[0]} and {names[1]} are typing…"
        return f"{names[0]} and {len(names) - 1} others are typing…"

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()
