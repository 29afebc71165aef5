from typing import Callable, Optional

from .config import Settings, settings
from .connection import ConnectionManager
from .presence import TypingPresenceTracker
from .schemas import ChatEvent, ConnectionState, EventKind, now_ms
from .stream import MessageStream
from .transport import RedisTransport, Transport


class ChatSession:
    """One client session: a connection, its message log and typing state.

    Presentation code calls ``connect``, ``disconnect``, ``send_message`` and
    ``on_input``, and reads ``stream``, ``typing`` and ``connection.state``.
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        conf: Settings = settings,
        clock: Callable[[], int] = now_ms,
    ):
        self.conf = conf
        self.connection = ConnectionManager(transport or RedisTransport(conf=conf), conf, clock)
        self.stream = MessageStream(self.connection, conf)
        self.typing = TypingPresenceTracker(self.connection, conf, clock)

        self.connection.add_route(conf.MESSAGE_BROADCAST_CHANNEL, self.stream.on_inbound)
        self.connection.add_route(conf.TYPING_BROADCAST_CHANNEL, self.typing.on_remote_event)
        self.connection.add_disconnect_hook(self.typing.force_stop)
        self.connection.add_state_listener(self._on_state_change)

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    def set_username(self, name: str) -> str:
        return self.connection.set_username(name)

    async def connect(self) -> bool:
        return await self.connection.connect()

    async def disconnect(self) -> None:
        await self.connection.disconnect()

    def on_input(self, text: str) -> None:
        self.typing.on_input(text)

    async def send_message(self, text: str) -> bool:
        text = (text or "").strip()
        if not text:
            return False
        sent = await self.connection.publish(
            self.conf.MESSAGE_COMMAND_CHANNEL,
            ChatEvent(
                sender=self.connection.username,
                text=text,
                date=self.connection.clock(),
                color=self.connection.local_color,
                type=EventKind.MESSAGE,
            ),
        )
        await self.typing.force_stop()
        return sent

    async def close(self) -> None:
        await self.connection.close()
        self.typing.cancel_local()

    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        if new in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        # timers must not fire against a closed connection
        self.typing.cancel_local()
        self.typing.reset()
