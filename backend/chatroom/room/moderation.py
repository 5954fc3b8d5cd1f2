"""Message acceptance policy and admin settings updates."""
import hmac
import logging
from typing import List, Optional, Tuple, Union

from pydantic import ValidationError

from .errors import PolicyRejection, Unauthorized, ValidationRejection
from .protocol import MediaSubmission, TextSubmission, error_frame, settings_update
from .schemas import AdminSettingsPatch, BaseMessage, MediaMessage, TextMessage, UserState, now_ms
from .state import Outbox, RoomState

logger = logging.getLogger(__name__)

Submission = Union[TextSubmission, MediaSubmission]

# Fields copied from a submission into the stored message. Thread membership
# is applied afterwards through the thread manager so reply counts stay right.
_SUBMISSION_EXCLUDE = {"type", "id", "threadId"}


def find_banned_word(content: str, banned_words: List[str]) -> Optional[str]:
    """First banned word found in ``content`` as a case-insensitive substring."""
    lowered = content.lower()
    for word in banned_words:
        if word and word.lower() in lowered:
            return word
    return None


def accept_message(state: RoomState, submission: Submission, sender: Optional[UserState]) -> BaseMessage:
    """Apply room policy to a submission and build the message to store.

    Checks run in order: sender joined, media allowed, banned words, then the
    expiry deadline.

    Raises:
        PolicyRejection: The room's policy refuses the message.
        ValidationRejection: ``expiresAt`` is not in the future.
    """
    if sender is None:
        raise PolicyRejection("You must join the room before sending messages")

    settings = state.settings
    if isinstance(submission, MediaSubmission) and not settings.allowMediaUploads:
        raise PolicyRejection("Media uploads are disabled in this room")

    content = submission.text if isinstance(submission, TextSubmission) else (submission.caption or "")
    if find_banned_word(content, settings.bannedWords) is not None:
        logger.info("[Moderation] Message from %s rejected: banned word", sender.userId)
        raise PolicyRejection("Message contains a banned word")

    if submission.expiresAt is not None and submission.expiresAt <= now_ms():
        raise ValidationRejection("expiresAt must be in the future")

    fields = submission.model_dump(exclude=_SUBMISSION_EXCLUDE, exclude_none=True)
    fields["sender"] = sender.name
    fields["userId"] = sender.userId
    if submission.id:
        fields["id"] = submission.id

    if isinstance(submission, MediaSubmission):
        return MediaMessage(**fields)
    return TextMessage(**fields)


# =============================================================================
# Settings
# =============================================================================


def validate_settings_patch(patch: dict) -> Tuple[dict, List[str]]:
    """Split a settings patch into its valid fields and per-field errors.

    Returns:
        Tuple of (valid fields, error descriptions for dropped fields).
    """
    errors = {}
    try:
        parsed = AdminSettingsPatch.model_validate(patch)
    except ValidationError as exc:
        for err in exc.errors():
            field = str(err["loc"][0]) if err["loc"] else "settings"
            errors.setdefault(field, f"{field}: {err['msg']}")
        parsed = AdminSettingsPatch.model_validate(
            {k: v for k, v in patch.items() if k not in errors}
        )

    valid = {}
    for field, value in parsed.model_dump(exclude_unset=True).items():
        if value is None:
            errors.setdefault(field, f"{field}: must not be null")
        else:
            valid[field] = value
    return valid, list(errors.values())


def check_admin_password(state: RoomState, supplied: str) -> None:
    if not hmac.compare_digest(supplied.encode("utf-8"), state.admin_password.encode("utf-8")):
        raise Unauthorized()


def update_settings(state: RoomState, patch: dict, supplied_password: str, outbox: Outbox) -> List[str]:
    """Merge an authorized settings patch and broadcast the result.

    Invalid fields are dropped and reported to the caller only; the rest of
    the patch is applied.

    Raises:
        Unauthorized: ``supplied_password`` does not match.

    Returns:
        Error descriptions for the dropped fields.
    """
    check_admin_password(state, supplied_password)

    valid, errors = validate_settings_patch(patch)
    if valid:
        state.settings = state.settings.model_copy(update=valid)
        state.settings_dirty = True
        logger.info("[Moderation] Room %s settings updated: %s", state.room_id, sorted(valid))

        if "maxMessageHistory" in valid:
            state.store.max_history = state.settings.maxMessageHistory
            if state.store.prune():
                state.messages_dirty = True

        outbox.broadcast(settings_update(state.settings))

    if errors:
        logger.warning("[Moderation] Dropped invalid settings fields: %s", errors)
        outbox.reply(error_frame("Invalid settings dropped: " + "; ".join(errors)))
    return errors
