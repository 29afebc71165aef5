"""Connection lifecycle for one chat client session.

States move Disconnected -> Connecting -> Connected, with Error reachable
from Connecting (timeout, transport error) and Connected (transport
error). ``connect()`` may be retried from Error.
"""
import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional

from .config import Settings, settings
from .errors import (
    ConnectionFailure,
    ConnectionTimeout,
    InvalidUsernameError,
    UsernameLockedError,
)
from .metrics import EVENTS_DROPPED, EVENTS_PUBLISHED, EVENTS_RECEIVED, PUBLISH_FAILURES, STATE_TRANSITIONS
from .schemas import ChatEvent, ConnectionState, EventKind, now_ms
from .timers import Timer
from .transport import Handler, Transport

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState, ConnectionState], None]
AlertListener = Callable[[str], None]
DisconnectHook = Callable[[], Awaitable[None]]

_OPEN_STATES = (ConnectionState.CONNECTING, ConnectionState.CONNECTED)


def generate_username(clock: Callable[[], int] = now_ms) -> str:
    return f"User_{str(clock())[-6:]}"


def validate_username(name: str, conf: Settings = settings) -> str:
    trimmed = (name or "").strip()
    if not conf.USERNAME_MIN_LENGTH <= len(trimmed) <= conf.USERNAME_MAX_LENGTH:
        raise InvalidUsernameError(
            f"username must be {conf.USERNAME_MIN_LENGTH}-{conf.USERNAME_MAX_LENGTH} characters"
        )
    if not re.match(conf.USERNAME_PATTERN, trimmed):
        raise InvalidUsernameError("only letters, digits, spaces, hyphens and underscores")
    return trimmed


class ConnectionManager:
    def __init__(
        self,
        transport: Transport,
        conf: Settings = settings,
        clock: Callable[[], int] = now_ms,
    ):
        self.transport = transport
        self.conf = conf
        self.clock = clock
        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[ConnectionFailure] = None

        self.username = generate_username(clock)
        self.username_confirmed = False
        self.local_color = conf.DEFAULT_COLOR
        self._color_assigned = False

        self._routes: Dict[str, Handler] = {}
        self._state_listeners: List[StateListener] = []
        self._alert_listeners: List[AlertListener] = []
        self._disconnect_hooks: List[DisconnectHook] = []
        self._connect_timer = Timer(conf.CONNECT_TIMEOUT_MS, self._on_connect_timeout, name="connect-timeout")

        transport.on_connected = self._on_transport_connected
        transport.on_disconnected = self._on_transport_disconnected
        transport.on_error = self._on_transport_error

    # -- wiring --
    def add_route(self, channel: str, handler: Handler) -> None:
        self._routes[channel] = handler

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_alert_listener(self, listener: AlertListener) -> None:
        self._alert_listeners.append(listener)

    def add_disconnect_hook(self, hook: DisconnectHook) -> None:
        """Run ``hook`` before the farewell event on a caller-initiated disconnect."""
        self._disconnect_hooks.append(hook)

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def connect_timer_armed(self) -> bool:
        return self._connect_timer.armed

    # -- identity --
    def set_username(self, name: str) -> str:
        if self.state in _OPEN_STATES:
            raise UsernameLockedError("disconnect before changing the username")
        self.username = validate_username(name, self.conf)
        self.username_confirmed = True
        return self.username

    def assign_color(self, color: str) -> bool:
        """Adopt the broker-assigned color once per connection."""
        if self._color_assigned:
            return False
        self.local_color = color
        self._color_assigned = True
        logger.info("Display color for %s: %s", self.username, color)
        return True

    # -- lifecycle --
    async def connect(self) -> bool:
        if not self.username_confirmed or not self.username.strip():
            self._alert("Set a username before connecting")
            return False
        if self.state in _OPEN_STATES:
            logger.debug("connect() ignored while %s", self.state.value)
            return False
        if self.state is ConnectionState.ERROR:
            await self._deactivate_quietly()

        self.last_error = None
        self.local_color = self.conf.DEFAULT_COLOR
        self._color_assigned = False
        self._set_state(ConnectionState.CONNECTING)
        self._connect_timer.start()
        logger.info("Connecting as %s", self.username)
        try:
            await self.transport.activate()
        except Exception as e:
            self._fail(ConnectionFailure(f"could not start the transport: {e}"))
        return True

    async def disconnect(self) -> None:
        if self.state is ConnectionState.DISCONNECTED:
            return
        if self.state is ConnectionState.CONNECTED:
            logger.info("Disconnecting %s", self.username)
            for hook in self._disconnect_hooks:
                try:
                    await hook()
                except Exception:
                    logger.exception("Disconnect hook failed")
            await self.publish(
                self.conf.MESSAGE_COMMAND_CHANNEL,
                ChatEvent(
                    sender=self.username,
                    date=self.clock(),
                    color=self.local_color,
                    type=EventKind.USER_LEFT,
                ),
            )
        await self._deactivate_quietly()
        self._set_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        await self.disconnect()
        self._connect_timer.cancel()

    async def publish(self, channel: str, event: ChatEvent) -> bool:
        if self.state is not ConnectionState.CONNECTED:
            logger.warning("Dropping %s for %s: not connected", event.type.value, channel)
            return False
        try:
            await self.transport.publish(channel, event.to_wire())
        except Exception as e:
            PUBLISH_FAILURES.inc()
            logger.warning("Publish of %s to %s failed: %s", event.type.value, channel, e)
            return False
        EVENTS_PUBLISHED.labels(channel).inc()
        return True

    # -- transport callbacks --
    async def _on_transport_connected(self) -> None:
        if self.state is not ConnectionState.CONNECTING:
            logger.warning("Ignoring transport acknowledgment while %s", self.state.value)
            return
        self._connect_timer.cancel()
        self._set_state(ConnectionState.CONNECTED)
        for channel in self._routes:
            try:
                await self.transport.subscribe(channel, self._dispatcher(channel))
            except Exception as e:
                self._fail(ConnectionFailure(f"could not subscribe to {channel}: {e}"))
                return
        await self.publish(
            self.conf.MESSAGE_COMMAND_CHANNEL,
            ChatEvent(sender=self.username, date=self.clock(), type=EventKind.USER_JOINED),
        )

    async def _on_transport_disconnected(self) -> None:
        if self.state in _OPEN_STATES:
            logger.info("Transport closed the connection")
            self._set_state(ConnectionState.DISCONNECTED)

    async def _on_transport_error(self, cause: str) -> None:
        if self.state in _OPEN_STATES:
            self._fail(ConnectionFailure(cause))
        else:
            logger.debug("Transport error while %s: %s", self.state.value, cause)

    async def _on_connect_timeout(self) -> None:
        if self.state is not ConnectionState.CONNECTING:
            return
        self._fail(ConnectionTimeout(f"no acknowledgment within {self.conf.CONNECT_TIMEOUT_MS} ms"))
        await self._deactivate_quietly()

    def _dispatcher(self, channel: str) -> Handler:
        handler = self._routes[channel]

        def dispatch(body: str) -> None:
            if self.state is not ConnectionState.CONNECTED:
                EVENTS_DROPPED.labels("not_connected").inc()
                return
            EVENTS_RECEIVED.labels(channel).inc()
            handler(body)

        return dispatch

    # -- helpers --
    def _set_state(self, new: ConnectionState) -> None:
        old = self.state
        if old is new:
            return
        self.state = new
        if new is not ConnectionState.CONNECTING:
            self._connect_timer.cancel()
        STATE_TRANSITIONS.labels(new.value).inc()
        logger.info("Connection %s -> %s", old.value, new.value)
        for listener in list(self._state_listeners):
            listener(old, new)

    def _fail(self, failure: ConnectionFailure) -> None:
        self.last_error = failure
        logger.error("Connection failed: %s", failure.cause)
        self._set_state(ConnectionState.ERROR)
        self._alert(f"Connection failed: {failure.cause}")

    def _alert(self, text: str) -> None:
        logger.warning(text)
        for listener in list(self._alert_listeners):
            listener(text)

    async def _deactivate_quietly(self) -> None:
        try:
            await self.transport.deactivate()
        except Exception as e:
            logger.warning("Transport deactivation failed: %s", e)
