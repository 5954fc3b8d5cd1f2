"""Per-connection presence for one room."""
import logging
from typing import Dict, List, Optional

from .scores import ranking_score
from .schemas import UserState, now_ms
from .store import MessageStore

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Tracks joined connections. Entries die with their connection."""

    def __init__(self) -> None:
        # connection id -> UserState
        self._users: Dict[str, UserState] = {}

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._users

    def __len__(self) -> int:
        return len(self._users)

    def get(self, connection_id: str) -> Optional[UserState]:
        return self._users.get(connection_id)

    def join(self, connection_id: str, name: str, user_id: Optional[str] = None) -> UserState:
        """Create or overwrite the entry for a connection.

        An empty name falls back to the connection identity.
        """
        user = UserState(
            id=connection_id,
            userId=user_id or connection_id,
            name=name or connection_id,
        )
        self._users[connection_id] = user
        logger.info("[Presence] %s joined as %r", connection_id, user.name)
        return user

    def leave(self, connection_id: str) -> Optional[UserState]:
        user = self._users.pop(connection_id, None)
        if user is not None:
            logger.info("[Presence] %s (%r) left", connection_id, user.name)
        return user

    def set_typing(self, connection_id: str, is_typing: bool) -> bool:
        """Update the typing flag.

        Returns:
            True only if the stored value changed.
        """
        user = self._users.get(connection_id)
        if user is None or user.isTyping == is_typing:
            return False
        user.isTyping = is_typing
        return True

    def touch(self, connection_id: str) -> None:
        user = self._users.get(connection_id)
        if user is not None:
            user.lastSeen = now_ms()

    def user_list(self, store: MessageStore) -> List[dict]:
        """Fresh snapshot of the room's users, rankings recomputed."""
        return [
            {
                "id": user.id,
                "userId": user.userId,
                "name": user.name,
                "isTyping": user.isTyping,
                "rankingScore": ranking_score(store, user.userId),
            }
            for user in self._users.values()
        ]
