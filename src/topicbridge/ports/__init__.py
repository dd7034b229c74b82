"""
Collaborator ports.

- source: direct-message service (threads), implemented outside this package
- destination: forum-style team chat, one sub-channel per thread
- telegram: Telegram Bot API forum-topic destination
"""

from .destination import DestinationChatClient
from .source import SourceMessagingClient, normalize_message
from .telegram import TelegramChatClient

__all__ = ["DestinationChatClient", "SourceMessagingClient", "TelegramChatClient", "normalize_message"]
