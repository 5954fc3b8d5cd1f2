"""Self-destructing messages: expiry deadlines, view limits, one-time views
and confirm-before-view prompts.

Per-message state machine::

    Active -> AwaitingConfirmation -> Active    (confirmation loop, per viewer)
    Active -> Hidden                            (terminal: deadline or view limit)

View gates run in a fixed order: hidden, one-time view, confirmation, then
view counting.
"""
import asyncio
import logging
from typing import Callable, Dict, Optional

from .protocol import SystemAction, system_info
from .schemas import BaseMessage, now_ms
from .state import Outbox, RoomState

logger = logging.getLogger(__name__)

REASON_EXPIRED = "expired"
REASON_VIEW_LIMIT = "viewLimit"


def hide(message: BaseMessage, reason: str, outbox: Optional[Outbox]) -> bool:
    """Flip ``isHidden`` once. Returns False if the message was already hidden."""
    if message.isHidden:
        return False
    message.isHidden = True
    logger.info("[Ephemeral] Message %s hidden (%s)", message.id, reason)
    if outbox is not None:
        outbox.broadcast(system_info(
            SystemAction.MESSAGE_EXPIRED,
            targetMessageId=message.id,
            reason=reason,
        ))
    return True


def _view_limit_reached(message: BaseMessage) -> bool:
    return message.maxViews is not None and message.viewCount >= message.maxViews


def expire(state: RoomState, message_id: str, outbox: Outbox) -> None:
    """Deadline reached. A message deleted or pruned in the meantime is skipped."""
    message = state.store.find_by_id(message_id)
    if message is None:
        logger.debug("[Ephemeral] Expiry for missing message %s skipped", message_id)
        return
    if hide(message, REASON_EXPIRED, outbox):
        state.messages_dirty = True


def view_message(
    state: RoomState,
    message_id: str,
    viewer_id: str,
    outbox: Outbox,
    confirmed: bool = False,
) -> None:
    """Handle a view request from ``viewer_id``.

    Args:
        confirmed: The request answers an earlier confirmation prompt.
    """
    message = state.store.find_by_id(message_id)
    if message is None:
        logger.debug("[Ephemeral] View of unknown message %s ignored", message_id)
        return

    if message.isHidden:
        outbox.reply(system_info(
            SystemAction.MESSAGE_EXPIRED,
            targetMessageId=message_id,
            reason=REASON_VIEW_LIMIT if _view_limit_reached(message) else REASON_EXPIRED,
        ))
        return

    if message.oneTimeView and viewer_id in message.viewedBy:
        outbox.reply(system_info(SystemAction.MESSAGE_ALREADY_VIEWED, targetMessageId=message_id))
        return

    if message.requireConfirmation:
        key = (message_id, viewer_id)
        if confirmed:
            state.confirmed_views.add(key)
        elif key not in state.confirmed_views:
            outbox.reply(system_info(SystemAction.CONFIRM_VIEW, targetMessageId=message_id))
            return

    if message.oneTimeView:
        message.viewedBy.append(viewer_id)
    message.viewCount += 1
    state.messages_dirty = True

    outbox.broadcast(system_info(
        SystemAction.MESSAGE_VIEWED,
        targetMessageId=message_id,
        userId=viewer_id,
        viewCount=message.viewCount,
        viewedBy=list(message.viewedBy),
    ))

    if _view_limit_reached(message):
        hide(message, REASON_VIEW_LIMIT, outbox)


class ExpiryScheduler:
    """Cancellable expiry timers keyed by message id.

    A timer never touches room state itself; when it fires it hands the
    message id to ``post``, which queues an expiry event on the room.
    """

    def __init__(self, post: Callable[[str], None]) -> None:
        self._post = post
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._timers

    def __len__(self) -> int:
        return len(self._timers)

    def schedule(self, message_id: str, expires_at: int) -> None:
        self.cancel(message_id)
        delay = max(0.0, (expires_at - now_ms()) / 1000)
        loop = asyncio.get_running_loop()
        self._timers[message_id] = loop.call_later(delay, self._fire, message_id)
        logger.debug("[Ephemeral] Expiry for %s scheduled in %.3fs", message_id, delay)

    def cancel(self, message_id: str) -> None:
        handle = self._timers.pop(message_id, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _fire(self, message_id: str) -> None:
        self._timers.pop(message_id, None)
        self._post(message_id)
