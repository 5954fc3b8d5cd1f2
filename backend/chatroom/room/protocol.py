"""Wire protocol for the room WebSocket.

Inbound frames form a closed discriminated union on ``type``; ``clientAction``
frames form a nested union on ``action``. Anything outside the union is a
``ProtocolError``.

Inbound:
    - text / media: message submission
    - clientAction: join, leave, typing, read, react, rateMessage,
      deleteMessage, viewMessage, confirmView, createThread, replyInThread
    - getSettings
    - adminUpdate: password + partial settings

Outbound:
    - the stored message itself
    - systemInfo: see ``SystemAction``
    - settingsUpdate: full settings snapshot
"""
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import ProtocolError
from .schemas import AdminSettings, MediaType, now_ms


# =============================================================================
# Inbound frames
# =============================================================================


class TextSubmission(BaseModel):
    """Text message as sent by a client.

    ``sender``, ``userId`` and ``timestamp`` are not declared, so any
    client-supplied values are discarded during parsing.
    """
    type: Literal["text"]
    id: Optional[str] = None
    text: str
    formattedText: bool = False
    replyTo: Optional[str] = None
    threadId: Optional[str] = None
    expiresAt: Optional[int] = None
    maxViews: Optional[int] = Field(default=None, ge=1)
    requireConfirmation: bool = False
    oneTimeView: bool = False


class MediaSubmission(BaseModel):
    """Media message; ``url`` comes from the external blob store."""
    type: Literal["media"]
    id: Optional[str] = None
    mediaType: MediaType
    url: str = Field(..., min_length=1)
    caption: Optional[str] = None
    duration: Optional[float] = Field(default=None, ge=0)
    replyTo: Optional[str] = None
    threadId: Optional[str] = None
    expiresAt: Optional[int] = None
    maxViews: Optional[int] = Field(default=None, ge=1)
    requireConfirmation: bool = False
    oneTimeView: bool = False


class _ClientAction(BaseModel):
    type: Literal["clientAction"]


class _TargetedAction(_ClientAction):
    targetMessageId: str = Field(..., min_length=1)


class JoinAction(_ClientAction):
    action: Literal["join"]
    sender: str = ""
    userId: Optional[str] = None


class LeaveAction(_ClientAction):
    action: Literal["leave"]


class TypingAction(_ClientAction):
    action: Literal["typing"]
    isTyping: bool = True


class ReadAction(_TargetedAction):
    action: Literal["read"]


class ReactAction(_TargetedAction):
    action: Literal["react"]
    reaction: str = Field(..., min_length=1)


class RateAction(_TargetedAction):
    action: Literal["rateMessage"]
    rating: Union[int, str]


class DeleteAction(_TargetedAction):
    action: Literal["deleteMessage"]
    password: str = ""


class ViewAction(_TargetedAction):
    action: Literal["viewMessage"]


class ConfirmViewAction(_TargetedAction):
    action: Literal["confirmView"]


class CreateThreadAction(_TargetedAction):
    action: Literal["createThread"]


class ReplyInThreadAction(_TargetedAction):
    action: Literal["replyInThread"]
    threadId: str = Field(..., min_length=1)


ClientAction = Annotated[
    Union[
        JoinAction,
        LeaveAction,
        TypingAction,
        ReadAction,
        ReactAction,
        RateAction,
        DeleteAction,
        ViewAction,
        ConfirmViewAction,
        CreateThreadAction,
        ReplyInThreadAction,
    ],
    Field(discriminator="action"),
]


class GetSettingsRequest(BaseModel):
    type: Literal["getSettings"]


class AdminUpdateRequest(BaseModel):
    type: Literal["adminUpdate"]
    password: str = ""
    settings: Dict[str, Any] = Field(default_factory=dict)


InboundFrame = Annotated[
    Union[TextSubmission, MediaSubmission, ClientAction, GetSettingsRequest, AdminUpdateRequest],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter = TypeAdapter(InboundFrame)


def parse_frame(raw: str) -> BaseModel:
    """Parse one raw text frame into its inbound model.

    Raises:
        ProtocolError: The frame is not JSON, has no/unknown discriminant, or
            is missing required fields.
    """
    try:
        return _inbound_adapter.validate_json(raw)
    except ValidationError as exc:
        raise ProtocolError(_describe(exc)) from exc


def _describe(exc: ValidationError) -> str:
    first = exc.errors()[0]
    kind = first["type"]
    if kind == "json_invalid":
        return "Malformed frame: not valid JSON"
    if kind == "union_tag_invalid":
        ctx = first.get("ctx", {})
        field = ctx.get("discriminator", "type").strip("'")
        return f"Unknown {field}: {ctx.get('tag', '?')}"
    if kind == "union_tag_not_found":
        field = first.get("ctx", {}).get("discriminator", "type").strip("'")
        return f"Malformed frame: missing '{field}'"
    if kind in ("model_type", "model_attributes_type", "dict_type"):
        return "Malformed frame: expected a JSON object"
    loc = ".".join(str(part) for part in first["loc"][1:]) or "frame"
    return f"Invalid frame: {loc}: {first['msg']}"


# =============================================================================
# Outbound frames
# =============================================================================


class SystemAction(str, Enum):
    USER_LIST = "userList"
    WELCOME = "welcome"
    READ = "read"
    REACTION_UPDATE = "reactionUpdate"
    MESSAGE_RATING_UPDATE = "messageRatingUpdate"
    USER_RANKING_UPDATE = "userRankingUpdate"
    MESSAGE_DELETED = "messageDeleted"
    MESSAGE_EXPIRED = "messageExpired"
    MESSAGE_VIEWED = "messageViewed"
    CONFIRM_VIEW = "confirmView"
    MESSAGE_ALREADY_VIEWED = "messageAlreadyViewed"
    THREAD_UPDATE = "threadUpdate"
    ERROR = "error"


def system_info(action: SystemAction, **fields: Any) -> dict:
    return {"type": "systemInfo", "action": action.value, "timestamp": now_ms(), **fields}


def error_frame(message: str) -> dict:
    return system_info(SystemAction.ERROR, message=message)


def settings_update(settings: AdminSettings) -> dict:
    return {"type": "settingsUpdate", "settings": settings.model_dump()}
