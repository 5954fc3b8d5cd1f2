"""Thread creation and reply counting.

The thread starter holds the authoritative reply count. Replies to threads
whose starter is gone (deleted or pruned) are dropped, never auto-created.
"""
import logging
import uuid

from .protocol import SystemAction, system_info
from .schemas import BaseMessage
from .state import Outbox, RoomState

logger = logging.getLogger(__name__)


def _thread_update(starter: BaseMessage) -> dict:
    return system_info(
        SystemAction.THREAD_UPDATE,
        threadId=starter.threadId,
        targetMessageId=starter.id,
        threadMessageCount=starter.threadMessageCount,
    )


def _leave_current_thread(state: RoomState, message: BaseMessage, outbox: Outbox) -> None:
    """Take a reply out of its thread, decrementing that thread's count."""
    if message.threadId is None or message.isThreadStarter:
        return
    previous = state.store.thread_starter(message.threadId)
    if previous is not None and previous.threadMessageCount:
        previous.threadMessageCount -= 1
        outbox.broadcast(_thread_update(previous))


def create_thread(state: RoomState, message_id: str, outbox: Outbox) -> None:
    message = state.store.find_by_id(message_id)
    if message is None:
        logger.warning("[Threads] Cannot start thread on unknown message %s", message_id)
        return

    if not message.isThreadStarter:
        # A reply promoted to a starter no longer counts in its old thread
        _leave_current_thread(state, message, outbox)
        message.threadId = str(uuid.uuid4())
        message.isThreadStarter = True
        message.threadMessageCount = 1
        state.messages_dirty = True
        logger.info("[Threads] Thread %s started on message %s", message.threadId, message_id)

    outbox.broadcast(_thread_update(message))


def reply_in_thread(state: RoomState, message_id: str, thread_id: str, outbox: Outbox) -> None:
    """Tag ``message_id`` as a reply in ``thread_id`` and bump the count."""
    message = state.store.find_by_id(message_id)
    if message is None:
        logger.warning("[Threads] Reply message %s not found", message_id)
        return

    starter = state.store.thread_starter(thread_id)
    if starter is None:
        logger.warning("[Threads] Thread %s not found; reply %s dropped", thread_id, message_id)
        return

    if message.isThreadStarter:
        logger.warning("[Threads] Message %s starts its own thread; not moved to %s", message_id, thread_id)
        return

    if message.threadId == thread_id:
        logger.debug("[Threads] Message %s already in thread %s", message_id, thread_id)
        return

    _leave_current_thread(state, message, outbox)

    message.threadId = thread_id
    starter.threadMessageCount = (starter.threadMessageCount or 1) + 1
    state.messages_dirty = True
    outbox.broadcast(_thread_update(starter))
