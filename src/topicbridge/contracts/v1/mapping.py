from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


RecordType = Literal["chat", "user", "filter"]

# Unique key field inside `data` for each record type.
RECORD_KEY_FIELDS: Dict[str, str] = {
    "chat": "threadId",
    "user": "participantId",
    "filter": "term",
}


class SubchannelMapping(BaseModel):
    """thread <-> sub-channel pairing. Bijective across the store."""

    thread_id: str = Field(alias="threadId")
    subchannel_id: str = Field(alias="subchannelId")
    created_at: str = Field(alias="createdAt")
    last_activity: str = Field(alias="lastActivity")
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ParticipantProfile(BaseModel):
    participant_id: str = Field(alias="participantId")
    username: Optional[str] = None
    full_name: Optional[str] = Field(default=None, alias="fullName")
    first_seen: str = Field(alias="firstSeen")
    message_count: int = Field(default=0, alias="messageCount")
    last_seen: str = Field(alias="lastSeen")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class StoredRecord(BaseModel):
    """Envelope written to the persistence backend."""

    type: RecordType
    data: Dict[str, Any]

    model_config = ConfigDict(extra="forbid")
