"""Explicit per-room state and the outbox handlers write to.

Handlers never touch sockets. They mutate a ``RoomState`` and append frames
to an ``Outbox``; the room coordinator delivers the outbox afterwards, in
order, so every observer sees the same sequence.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from .presence import PresenceTracker
from .schemas import AdminSettings
from .store import MessageStore


@dataclass
class RoomState:
    room_id: str
    admin_password: str
    settings: AdminSettings = field(default_factory=AdminSettings)
    store: MessageStore = field(default_factory=MessageStore)
    presence: PresenceTracker = field(default_factory=PresenceTracker)
    # (message id, viewer user id) pairs that passed the confirmation prompt
    confirmed_views: Set[Tuple[str, str]] = field(default_factory=set)
    # user id -> ranking score last broadcast for that user
    broadcast_rankings: Dict[str, int] = field(default_factory=dict)
    # set by handlers that changed message content, cleared after snapshotting
    messages_dirty: bool = False
    settings_dirty: bool = False


@dataclass
class Delivery:
    payload: dict
    # None means every connection in the room
    target: Optional[str] = None


class Outbox:
    """Ordered frames produced while handling one event.

    Args:
        origin: Connection the event came from, if any. ``reply`` targets it.
    """

    def __init__(self, origin: Optional[str] = None) -> None:
        self.origin = origin
        self.deliveries: List[Delivery] = []

    def broadcast(self, payload: dict) -> None:
        self.deliveries.append(Delivery(payload))

    def reply(self, payload: dict) -> None:
        if self.origin is None:
            return
        self.deliveries.append(Delivery(payload, self.origin))

    def send_to(self, connection_id: str, payload: dict) -> None:
        self.deliveries.append(Delivery(payload, connection_id))

    # Test conveniences

    @property
    def broadcasts(self) -> List[dict]:
        return [d.payload for d in self.deliveries if d.target is None]

    @property
    def replies(self) -> List[dict]:
        return [d.payload for d in self.deliveries if d.target is not None]

    def actions(self) -> List[str]:
        return [d.payload.get("action", d.payload.get("type")) for d in self.deliveries]
