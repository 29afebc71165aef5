class ChatSyncError(Exception):
    """Base class for errors raised by the chat client engine."""


class InvalidUsernameError(ChatSyncError, ValueError):
    pass


class UsernameLockedError(ChatSyncError):
    """The username cannot change while a connection is open or opening."""


class MalformedEventError(ChatSyncError, ValueError):
    pass


class ConnectionFailure(ChatSyncError):
    """Why the connection ended up in the Error state."""

    def __init__(self, cause: str):
        super().__init__(cause)
        self.cause = cause


class ConnectionTimeout(ConnectionFailure):
    pass
