"""Failure taxonomy for the relay.

Each error is scoped: protocol and send errors end a single connection,
setup errors reject a single connection attempt, and store errors threaten
history durability for the whole relay.
"""


class RelayError(Exception):
    pass


class ProtocolError(RelayError):
    """An inbound frame could not be decoded into a chat message."""


class SendError(RelayError):
    """Writing a frame to a client failed.

    ``graceful`` is true when the peer was already going away or the stream
    had ended; such failures are expected on normal disconnect.
    """

    def __init__(self, message: str, *, graceful: bool = False) -> None:
        super().__init__(message)
        self.graceful = graceful


class StoreUnavailable(RelayError):
    """The history backend could not be reached."""


class ConnectionSetupError(RelayError):
    """A connection attempt was rejected before it became active."""


class RegistryFull(ConnectionSetupError):
    pass


class RelayDegraded(RelayError):
    """History persistence failed; new inbound messages are refused."""
