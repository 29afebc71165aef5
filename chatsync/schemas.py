from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union
import time

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import MalformedEventError


# 9999-12-31T23:59:59.999Z, the last instant datetime can represent
MAX_DATE_MS = 253_402_300_799_999


def now_ms() -> int:
    return int(time.time() * 1000)


class EventKind(str, Enum):
    MESSAGE = "MESSAGE"
    USER_JOINED = "USER_JOINED"
    USER_LEFT = "USER_LEFT"
    TYPING_START = "TYPING_START"
    TYPING_STOP = "TYPING_STOP"


MESSAGE_KINDS = frozenset({EventKind.MESSAGE, EventKind.USER_JOINED, EventKind.USER_LEFT})
TYPING_KINDS = frozenset({EventKind.TYPING_START, EventKind.TYPING_STOP})
SYSTEM_KINDS = frozenset({EventKind.USER_JOINED, EventKind.USER_LEFT})

# older brokers announce joins as NEW_USER
_LEGACY_KINDS = {"NEW_USER": EventKind.USER_JOINED}


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ChatEvent(BaseModel):
    """One event as carried on the wire.

    ``type`` is the discriminant; ``color`` is optional and only
    authoritative on a broker-stamped USER_JOINED for the local user.
    """

    model_config = ConfigDict(frozen=True)

    sender: str = Field(min_length=1)
    text: str = ""
    date: int = Field(default_factory=now_ms, ge=0, le=MAX_DATE_MS)
    color: Optional[str] = None
    type: EventKind

    @field_validator("type", mode="before")
    @classmethod
    def _legacy_kind(cls, v):
        if isinstance(v, str):
            return _LEGACY_KINDS.get(v, v)
        return v

    @field_validator("text", mode="before")
    @classmethod
    def _null_text(cls, v):
        return "" if v is None else v

    @field_validator("date", mode="before")
    @classmethod
    def _null_date(cls, v):
        return now_ms() if v is None else v

    @property
    def is_system(self) -> bool:
        return self.type in SYSTEM_KINDS

    @property
    def is_typing_signal(self) -> bool:
        return self.type in TYPING_KINDS

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)


def parse_event(body: Union[str, bytes]) -> ChatEvent:
    """Validate a raw wire body, raising MalformedEventError on any defect."""
    try:
        return ChatEvent.model_validate_json(body)
    except ValidationError as e:
        raise MalformedEventError(str(e)) from e


class DisplayMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    text: str
    date: datetime
    color: Optional[str] = None
    kind: EventKind
    is_system: bool

    @classmethod
    def from_event(cls, event: ChatEvent) -> "DisplayMessage":
        return cls(
            username=event.sender,
            text=event.text,
            date=datetime.fromtimestamp(event.date / 1000, tz=timezone.utc),
            color=event.color,
            kind=event.type,
            is_system=event.is_system,
        )


class TypingPresenceEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    color: Optional[str] = None
    last_seen: int
