"""Pydantic models for room state: stored messages, users and admin settings.

Field names are camelCase because the models are serialized verbatim onto
the wire.
"""
import time
import uuid
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class MediaType(str, Enum):
    """Kind of media carried by a media message."""
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    VOICE = "voice"


# =============================================================================
# Messages
# =============================================================================


class BaseMessage(BaseModel):
    """Fields shared by every stored message.

    Derived fields (``ratingScore``, ``isHidden``, ``viewCount``, ...) are only
    ever written by the component that owns them.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    sender: str = Field(default="", description="Display name of the sender")
    userId: str = Field(default="", description="Identity of the owning user")
    timestamp: int = Field(default=0, description="Server time in epoch ms")

    replyTo: Optional[str] = None

    # Reactions, receipts and ratings
    reactions: Dict[str, List[str]] = Field(default_factory=dict)
    readBy: List[str] = Field(default_factory=list)
    ratings: Dict[str, int] = Field(default_factory=dict)
    ratingScore: int = 0

    # Self-destructing messages
    expiresAt: Optional[int] = None
    maxViews: Optional[int] = None
    viewCount: int = 0
    requireConfirmation: bool = False
    oneTimeView: bool = False
    viewedBy: List[str] = Field(default_factory=list)
    isHidden: bool = False

    # Threads
    threadId: Optional[str] = None
    isThreadStarter: bool = False
    threadMessageCount: Optional[int] = None

    @property
    def is_ephemeral(self) -> bool:
        return self.expiresAt is not None or self.maxViews is not None or self.oneTimeView

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class TextMessage(BaseMessage):
    type: Literal["text"] = "text"
    text: str = ""
    formattedText: bool = False

    @property
    def moderated_text(self) -> str:
        return self.text


class MediaMessage(BaseMessage):
    type: Literal["media"] = "media"
    mediaType: MediaType
    url: str
    caption: Optional[str] = None
    duration: Optional[float] = None

    @property
    def moderated_text(self) -> str:
        return self.caption or ""


Message = Annotated[Union[TextMessage, MediaMessage], Field(discriminator="type")]


# =============================================================================
# Users
# =============================================================================


class UserState(BaseModel):
    """Presence entry for one live connection.

    Attributes:
        id: Connection identity assigned by the gateway.
        userId: User identity that owns messages and ratings. Equal to ``id``
            unless the join action supplied a stable identity.
        name: Display name.
        lastSeen: Epoch ms of the last inbound frame.
        isTyping: Typing indicator.
    """
    id: str
    userId: str
    name: str
    lastSeen: int = Field(default_factory=now_ms)
    isTyping: bool = False


# =============================================================================
# Admin settings
# =============================================================================


class AdminSettings(BaseModel):
    """Room-wide policy controlled by the administrator."""
    welcomeMessage: str = ""
    allowMediaUploads: bool = True
    allowReactions: bool = True
    bannedWords: List[str] = Field(default_factory=list)
    maxMessageHistory: int = Field(default=100, ge=0)


class AdminSettingsPatch(BaseModel):
    """Partial settings update; each field is validated on its own.

    Strict mode keeps ``"yes"`` from passing as a boolean and ``True`` from
    passing as a history size. Unknown keys are rejected.
    """
    model_config = ConfigDict(extra="forbid", strict=True)

    welcomeMessage: Optional[str] = None
    allowMediaUploads: Optional[bool] = None
    allowReactions: Optional[bool] = None
    bannedWords: Optional[List[str]] = None
    maxMessageHistory: Optional[int] = Field(default=None, ge=0)
