"""Room session coordinator.

One coordinator per room owns connection lifecycle, message history,
reactions, ratings and read receipts, self-destructing messages and threads,
and enforces a single broadcast order for every observer of the room.

Components:
    - MessageStore: ordered history with pruning and pagination
    - PresenceTracker: per-connection user state and the derived user list
    - moderation: message acceptance and admin settings updates
    - reactions: reaction toggles, ratings, rankings and read receipts
    - ephemeral: expiry timers, view limits, one-time views, confirmations
    - threads: thread starters and reply counts
    - SnapshotStore: best-effort DuckDB snapshots
"""
from .errors import NotFoundRejection, PolicyRejection, ProtocolError, Unauthorized, ValidationRejection
from .manager import Room, RoomManager, manager
from .persistence import SnapshotStore
from .presence import PresenceTracker
from .store import MessageStore

__all__ = [
    "MessageStore",
    "NotFoundRejection",
    "PolicyRejection",
    "PresenceTracker",
    "ProtocolError",
    "Room",
    "RoomManager",
    "SnapshotStore",
    "Unauthorized",
    "ValidationRejection",
    "manager",
]
