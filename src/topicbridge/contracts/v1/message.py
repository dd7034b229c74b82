from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class MessageType(str, Enum):
    """Closed set of content kinds the bridge dispatches on (both directions)."""

    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"
    VOICE = "voice"
    DOCUMENT = "document"
    OTHER = "other"


MEDIA_TYPES = frozenset({MessageType.PHOTO, MessageType.VIDEO, MessageType.VOICE, MessageType.DOCUMENT})


class RawMessage(BaseModel):
    """What a source client hands to the bridge.

    Media travels inline (`media_bytes`), by reference (`media_url`), or is
    left for `SourceMessagingClient.fetch_media` to retrieve.
    """

    id: str
    thread_id: str
    sender_id: str = ""
    sender_username: str = ""
    text: str = ""
    timestamp: float = 0.0
    item_type: str = "text"
    caption: str = ""
    filename: str = ""
    media_url: str = ""
    media_bytes: Optional[bytes] = None

    model_config = ConfigDict(extra="allow")


class NormalizedMessage(BaseModel):
    """Source-side message after normalization; never persisted."""

    id: str
    text: str = ""
    sender_id: str = ""
    sender_username: str = ""
    timestamp: float = 0.0
    thread_id: str
    type: MessageType = MessageType.TEXT
    raw_payload: Any = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class DestinationEvent(BaseModel):
    """A message observed in the destination chat."""

    chat_id: str
    subchannel_id: str = ""
    message_id: str
    kind: MessageType = MessageType.TEXT
    text: str = ""
    caption: str = ""
    file_id: str = ""
    file_name: str = ""
    file_size: int = 0
    mime_type: str = ""
    chat_type: str = ""
    is_topic_message: bool = False
    from_user: str = ""
    update_id: int = 0

    model_config = ConfigDict(extra="forbid")


class MediaPayload(BaseModel):
    kind: MessageType
    data: Optional[bytes] = None
    url: str = ""
    filename: str = ""
    caption: str = ""
    mime_type: str = ""

    model_config = ConfigDict(extra="forbid")


class AckMarker(str, Enum):
    """Outcome reported back on a destination message."""

    SUCCESS = "success"
    ERROR = "error"
    UNKNOWN = "unknown"
    FILTERED = "filtered"
    PROCESSING = "processing"
