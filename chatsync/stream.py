import logging
from typing import Callable, List, Optional, Tuple, Union

from .config import Settings, settings
from .connection import ConnectionManager
from .errors import MalformedEventError
from .metrics import EVENTS_DROPPED
from .schemas import MESSAGE_KINDS, DisplayMessage, EventKind, parse_event

logger = logging.getLogger(__name__)

AppendListener = Callable[[DisplayMessage], None]


class MessageStream:
    """Bounded, append-only log of chat messages for the local session."""

    def __init__(self, connection: ConnectionManager, conf: Settings = settings):
        self.connection = connection
        self.conf = conf
        self._log: List[DisplayMessage] = []
        self._listeners: List[AppendListener] = []

    @property
    def messages(self) -> Tuple[DisplayMessage, ...]:
        return tuple(self._log)

    def __len__(self) -> int:
        return len(self._log)

    def add_listener(self, listener: AppendListener) -> None:
        self._listeners.append(listener)

    def on_inbound(self, body: Union[str, bytes]) -> Optional[DisplayMessage]:
        try:
            event = parse_event(body)
        except MalformedEventError as e:
            EVENTS_DROPPED.labels("malformed").inc()
            logger.error("Dropping malformed chat event: %s", e)
            return None
        if event.type not in MESSAGE_KINDS:
            EVENTS_DROPPED.labels("misrouted").inc()
            logger.warning("Dropping %s on the message channel", event.type.value)
            return None

        if (
            event.type is EventKind.USER_JOINED
            and event.sender == self.connection.username
            and event.color
        ):
            self.connection.assign_color(event.color)

        message = DisplayMessage.from_event(event)
        self._log.append(message)
        if len(self._log) > self.conf.HISTORY_MAX:
            self._log = self._log[-self.conf.HISTORY_KEEP:]
        logger.debug("%s from %s appended", event.type.value, event.sender)

        for listener in list(self._listeners):
            listener(message)
        return message

    def is_own(self, message: DisplayMessage) -> bool:
        return message.username == self.connection.username

    def clear(self) -> None:
        self._log = []
