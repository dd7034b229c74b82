"""Error kinds raised by collaborators and handled by the bridge.

Listeners and pipelines branch on these classes; anything else reaching a
pipeline boundary is logged as an internal error and swallowed there.
"""

from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""


class TransientNetworkError(BridgeError):
    """A collaborator call failed in a way that is worth retrying."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class AuthExpiredError(BridgeError):
    """Session or credentials were rejected; re-login is required."""


class StaleMappingError(BridgeError):
    """The destination confirmed that a sub-channel no longer exists."""

    def __init__(self, subchannel_id: str, message: str = ""):
        super().__init__(message or f"sub-channel {subchannel_id} no longer exists")
        self.subchannel_id = str(subchannel_id)


class UnsupportedContentError(BridgeError):
    """Content type or format cannot be delivered in binary form."""


class ConversionError(BridgeError):
    """A media transcode failed."""


class ConfigurationError(BridgeError):
    """Credentials, chat id or other required settings are missing."""
