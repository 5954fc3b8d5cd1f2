"""Reactions, ratings and read receipts.

Lookups of unknown messages are silent no-ops here: the target may have been
pruned moments before the action arrived.
"""
import logging
from typing import Union

from .errors import ValidationRejection
from .protocol import SystemAction, system_info
from .scores import ranking_score, recompute_rating_score
from .state import Outbox, RoomState

logger = logging.getLogger(__name__)

RATING_APPROVE = 1
RATING_HARSH = -1

RATING_ALIASES = {"approve": RATING_APPROVE, "harsh": RATING_HARSH}


def toggle_reaction(state: RoomState, message_id: str, user_id: str, emoji: str, outbox: Outbox) -> None:
    """Add ``user_id`` under ``emoji``, or remove them if already there."""
    message = state.store.find_by_id(message_id)
    if message is None:
        logger.warning("[Reactions] Reaction to unknown message %s ignored", message_id)
        return

    reactors = message.reactions.get(emoji, [])
    if user_id in reactors:
        reactors = [r for r in reactors if r != user_id]
    else:
        reactors = reactors + [user_id]

    if reactors:
        message.reactions[emoji] = reactors
    else:
        message.reactions.pop(emoji, None)

    state.messages_dirty = True
    outbox.broadcast(system_info(
        SystemAction.REACTION_UPDATE,
        targetMessageId=message_id,
        reactions={emoji: list(users) for emoji, users in message.reactions.items()},
    ))


def normalize_rating(value: Union[int, str]) -> int:
    if isinstance(value, str):
        value = RATING_ALIASES.get(value.lower(), 0)
    if value not in (RATING_APPROVE, RATING_HARSH):
        raise ValidationRejection(f"Invalid rating value: {value!r} (expected 1 or -1)")
    return value


def rate(state: RoomState, message_id: str, rater_user_id: str, value: Union[int, str], outbox: Outbox) -> None:
    """Store a rater's +1/-1 and propagate score and ranking changes.

    Raises:
        ValidationRejection: ``value`` is not +1 or -1.
    """
    rating = normalize_rating(value)

    message = state.store.find_by_id(message_id)
    if message is None:
        logger.warning("[Ratings] Rating for unknown message %s ignored", message_id)
        return
    if message.userId == rater_user_id:
        logger.warning("[Ratings] User %s tried to rate their own message %s", rater_user_id, message_id)
        return

    previous_score = message.ratingScore
    message.ratings[rater_user_id] = rating
    score = recompute_rating_score(message)
    state.messages_dirty = True

    outbox.broadcast(system_info(
        SystemAction.MESSAGE_RATING_UPDATE,
        targetMessageId=message_id,
        ratings=dict(message.ratings),
        ratingScore=score,
    ))

    if score != previous_score:
        refresh_ranking(state, message.userId, outbox)


def refresh_ranking(state: RoomState, user_id: str, outbox: Outbox) -> None:
    """Broadcast ``user_id``'s ranking if it differs from the last one sent."""
    ranking = ranking_score(state.store, user_id)
    last = state.broadcast_rankings.get(user_id)
    if last == ranking:
        return
    state.broadcast_rankings[user_id] = ranking
    outbox.broadcast(system_info(
        SystemAction.USER_RANKING_UPDATE,
        userId=user_id,
        rankingScore=ranking,
    ))


def mark_read(state: RoomState, message_id: str, user_id: str, outbox: Outbox) -> None:
    """Record a read receipt; only the first read by a user is broadcast."""
    message = state.store.find_by_id(message_id)
    if message is None:
        logger.debug("[Receipts] Read receipt for unknown message %s ignored", message_id)
        return
    if user_id in message.readBy:
        return
    message.readBy.append(user_id)
    state.messages_dirty = True
    outbox.broadcast(system_info(
        SystemAction.READ,
        targetMessageId=message_id,
        userId=user_id,
        readBy=list(message.readBy),
    ))
