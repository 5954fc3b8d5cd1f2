"""Ordered in-memory message log for one room."""
import logging
from collections import OrderedDict
from typing import Callable, Iterator, List, Optional

from .schemas import BaseMessage, now_ms

logger = logging.getLogger(__name__)

# Default page size for message history pagination
DEFAULT_PAGE_SIZE = 50

# Maximum page size to prevent abuse
MAX_PAGE_SIZE = 100


class MessageStore:
    """Oldest-first message history with history-size pruning.

    Pruning is destructive: once a message falls off the front of the log it
    is gone, even if other messages still reference it through ``replyTo`` or
    ``threadId``.
    """

    def __init__(
        self,
        max_history: int = 100,
        dedup_cache_size: int = 10000,
        on_prune: Optional[Callable[[List[BaseMessage]], None]] = None,
    ) -> None:
        self.max_history = max_history
        self.on_prune = on_prune
        self._messages: List[BaseMessage] = []
        self._last_timestamp = 0
        self._dedup_cache_size = dedup_cache_size
        # Message ids seen in this room (LRU cache)
        self._seen_ids: OrderedDict = OrderedDict()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[BaseMessage]:
        return iter(self._messages)

    @property
    def messages(self) -> List[BaseMessage]:
        """A copy of the ordered history."""
        return list(self._messages)

    def next_timestamp(self) -> int:
        """Server timestamp, strictly increasing within this store."""
        ts = max(now_ms(), self._last_timestamp + 1)
        self._last_timestamp = ts
        return ts

    def append(self, message: BaseMessage) -> BaseMessage:
        """Stamp and append a message, then prune.

        Returns:
            The stored message, carrying its server timestamp.
        """
        message.timestamp = self.next_timestamp()
        self._messages.append(message)
        self.remember_id(message.id)
        self.prune()
        return message

    def prune(self) -> List[BaseMessage]:
        """Drop the oldest messages until the history fits ``max_history``."""
        excess = len(self._messages) - self.max_history
        if excess <= 0:
            return []
        removed = self._messages[:excess]
        del self._messages[:excess]
        logger.debug("Pruned %d message(s) over history limit %d", excess, self.max_history)
        if self.on_prune is not None:
            self.on_prune(removed)
        return removed

    def find_by_id(self, message_id: str) -> Optional[BaseMessage]:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def remove(self, message_id: str) -> Optional[BaseMessage]:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return self._messages.pop(index)
        return None

    def messages_by_user(self, user_id: str) -> List[BaseMessage]:
        return [m for m in self._messages if m.userId == user_id]

    def thread_starter(self, thread_id: str) -> Optional[BaseMessage]:
        for message in self._messages:
            if message.isThreadStarter and message.threadId == thread_id:
                return message
        return None

    def load(self, messages: List[BaseMessage]) -> None:
        """Replace the history with restored messages (snapshot load)."""
        self._messages = list(messages)
        if self._messages:
            self._last_timestamp = max(m.timestamp for m in self._messages)
        for message in self._messages:
            self.remember_id(message.id)
        self.prune()

    # =========================================================================
    # Message Deduplication
    # =========================================================================

    def remember_id(self, message_id: str) -> None:
        self._seen_ids[message_id] = True
        self._seen_ids.move_to_end(message_id)
        while len(self._seen_ids) > self._dedup_cache_size:
            self._seen_ids.popitem(last=False)

    def is_duplicate(self, message_id: Optional[str]) -> bool:
        """Whether a client-supplied id was already accepted in this room."""
        if not message_id:
            return False  # No ID means we can't dedupe
        if message_id in self._seen_ids:
            self._seen_ids.move_to_end(message_id)
            return True
        # The history can outgrow the id cache; ids still stored are never reused
        return self.find_by_id(message_id) is not None

    # =========================================================================
    # Message Pagination
    # =========================================================================

    def page(self, before_ts: Optional[int] = None, limit: int = DEFAULT_PAGE_SIZE) -> List[BaseMessage]:
        """Get paginated message history (for lazy loading).

        Args:
            before_ts: Epoch ms cursor. Returns messages with timestamp < before_ts.
                       If None, returns the most recent messages.
            limit: Maximum number of messages to return.

        Returns:
            List of messages, oldest first.
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        messages = self._messages
        if before_ts is not None:
            messages = [m for m in messages if m.timestamp < before_ts]
        return messages[-limit:] if messages else []
