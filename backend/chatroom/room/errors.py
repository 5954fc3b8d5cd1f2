"""Rejection types raised by room handlers.

Every rejection is caught at the gateway boundary and turned into a unicast
``systemInfo`` error for the originating connection. None of them ever stops
the room.
"""


class RoomError(Exception):
    """Base class for all handler rejections."""


class ProtocolError(RoomError):
    """Malformed frame or unknown discriminant."""


class PolicyRejection(RoomError):
    """The room's policy forbids the action (banned word, feature disabled, ...)."""


class Unauthorized(PolicyRejection):
    """The supplied admin credential does not match."""

    def __init__(self, message: str = "Unauthorized: invalid admin password") -> None:
        super().__init__(message)


class NotFoundRejection(RoomError):
    """The targeted message does not exist (never existed, deleted or pruned)."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class ValidationRejection(RoomError):
    """A field carried a value outside its allowed range."""
