"""
Destination team-chat service: one forum chat, one sub-channel per thread.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from ..contracts.v1 import AckMarker, DestinationEvent, MediaPayload


class DestinationChatClient(ABC):
    """
    Abstract destination client.

    Send operations raise `StaleMappingError` when the platform reports the
    sub-channel gone, `UnsupportedContentError` when a payload cannot be
    delivered in binary form, and `TransientNetworkError` otherwise.
    """

    platform: str = "destination"

    @abstractmethod
    def connect(self) -> None:
        pass

    def disconnect(self) -> None:
        """Stop receiving events."""

    @abstractmethod
    def poll(self) -> List[DestinationEvent]:
        pass

    @abstractmethod
    def create_subchannel(self, chat_id: str, name: str) -> str:
        pass

    @abstractmethod
    def send_text(
        self,
        chat_id: str,
        subchannel_id: str,
        text: str,
        parse_mode: Optional[str] = None,
    ) -> Optional[str]:
        """Returns the new message id."""
        pass

    @abstractmethod
    def send_media(self, chat_id: str, subchannel_id: str, payload: MediaPayload) -> Optional[str]:
        pass

    @abstractmethod
    def set_reaction(self, chat_id: str, message_id: str, marker: AckMarker) -> None:
        pass

    @abstractmethod
    def pin_message(self, chat_id: str, message_id: str) -> None:
        pass

    @abstractmethod
    def subchannel_exists(self, chat_id: str, subchannel_id: str) -> bool:
        """False only when the platform confirms the sub-channel is gone."""
        pass

    @abstractmethod
    def download(self, event: DestinationEvent) -> bytes:
        pass

    def escape(self, text: str) -> str:
        """Escape user data for the rich-text mode used by welcome cards."""
        return text
