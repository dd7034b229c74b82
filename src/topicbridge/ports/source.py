"""
Source messaging service (direct-message threads).

The bridge only talks to the source through this interface; session
renewal details stay inside the implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..contracts.v1 import MessageType, NormalizedMessage, RawMessage
from ..util.time import epoch_seconds

_ITEM_TYPES: Dict[str, MessageType] = {
    "text": MessageType.TEXT,
    "photo": MessageType.PHOTO,
    "image": MessageType.PHOTO,
    "media": MessageType.PHOTO,
    "video": MessageType.VIDEO,
    "clip": MessageType.VIDEO,
    "reel": MessageType.VIDEO,
    "voice": MessageType.VOICE,
    "voice_media": MessageType.VOICE,
    "audio": MessageType.VOICE,
    "document": MessageType.DOCUMENT,
    "file": MessageType.DOCUMENT,
}


class SourceMessagingClient(ABC):
    """
    Abstract source client.

    Implementations raise `AuthExpiredError` when the session is rejected,
    `TransientNetworkError` for retryable failures, and `ConfigurationError`
    from `login()` when no credentials are available.
    """

    platform: str = "source"

    @abstractmethod
    def login(self) -> None:
        """Establish (or re-establish) a session."""
        pass

    @abstractmethod
    def list_new_messages(self) -> List[RawMessage]:
        """Return messages observed since the previous call (may include repeats).

        Messages sent by this account (echoes of bridged replies) must be left out.
        """
        pass

    @abstractmethod
    def send_text(self, thread_id: str, text: str) -> None:
        pass

    @abstractmethod
    def send_media(self, thread_id: str, data: bytes, kind: MessageType, filename: str = "") -> bool:
        """Send binary media. Returns False if the service refused the format."""
        pass

    def fetch_media(self, raw: RawMessage) -> Optional[bytes]:
        """Retrieve media bytes not carried inline or by URL."""
        _ = raw
        return None

    def get_profile_pic_url(self, participant_id: str) -> Optional[str]:
        _ = participant_id
        return None

    def disconnect(self) -> None:
        """Drop the session."""


def message_type_for(item_type: str) -> MessageType:
    return _ITEM_TYPES.get(str(item_type or "").strip().lower(), MessageType.OTHER)


def normalize_message(raw: RawMessage) -> NormalizedMessage:
    kind = message_type_for(raw.item_type)
    text = raw.text or ""
    if kind is not MessageType.TEXT and not text:
        text = raw.caption or ""
    username = (raw.sender_username or "").strip() or (f"user_{raw.sender_id}" if raw.sender_id else "")
    return NormalizedMessage(
        id=str(raw.id),
        text=text,
        sender_id=str(raw.sender_id or ""),
        sender_username=username,
        timestamp=epoch_seconds(raw.timestamp),
        thread_id=str(raw.thread_id),
        type=kind,
        raw_payload=raw,
    )
