from __future__ import annotations

from .mapping import RECORD_KEY_FIELDS, ParticipantProfile, RecordType, StoredRecord, SubchannelMapping
from .message import (
    MEDIA_TYPES,
    AckMarker,
    DestinationEvent,
    MediaPayload,
    MessageType,
    NormalizedMessage,
    RawMessage,
)

__all__ = [
    "AckMarker",
    "DestinationEvent",
    "MEDIA_TYPES",
    "MediaPayload",
    "MessageType",
    "NormalizedMessage",
    "ParticipantProfile",
    "RECORD_KEY_FIELDS",
    "RawMessage",
    "RecordType",
    "StoredRecord",
    "SubchannelMapping",
]
