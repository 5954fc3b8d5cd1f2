"""Derived scores. These are the only places rating totals are computed."""
from .schemas import BaseMessage
from .store import MessageStore


def recompute_rating_score(message: BaseMessage) -> int:
    """Reset ``ratingScore`` to the sum of the message's ratings."""
    message.ratingScore = sum(message.ratings.values())
    return message.ratingScore


def ranking_score(store: MessageStore, user_id: str) -> int:
    """Sum of ``ratingScore`` over every stored message owned by ``user_id``."""
    return sum(m.ratingScore for m in store.messages_by_user(user_id))
