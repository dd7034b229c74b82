"""
Forward pipeline: source thread -> destination sub-channel.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Set

from ..contracts.v1 import MEDIA_TYPES, MediaPayload, MessageType, NormalizedMessage, RawMessage
from ..errors import StaleMappingError, TransientNetworkError, UnsupportedContentError
from ..kernel.filters import ContentFilter
from ..kernel.mapping_store import MappingStore
from ..kernel.media import MediaFetcher
from ..kernel.topics import TopicMapper
from ..ports.destination import DestinationChatClient
from ..ports.source import SourceMessagingClient

logger = logging.getLogger("topicbridge.forward")

_DEFAULT_FILENAMES: Dict[MessageType, str] = {
    MessageType.PHOTO: "photo.jpg",
    MessageType.VIDEO: "video.mp4",
    MessageType.VOICE: "voice.m4a",
    MessageType.DOCUMENT: "document",
}


def fallback_text(kind: MessageType, caption: str = "", filename: str = "") -> str:
    """Descriptive line used when binary content cannot be delivered."""
    detail = (caption or filename or "").strip()
    return f"[{kind.value}] {detail}".rstrip()


class ForwardPipeline:
    def __init__(
        self,
        store: MappingStore,
        topics: TopicMapper,
        destination: DestinationChatClient,
        chat_id: str,
        content_filter: ContentFilter,
        *,
        source: Optional[SourceMessagingClient] = None,
        fetcher: Optional[MediaFetcher] = None,
    ):
        self.store = store
        self.topics = topics
        self.destination = destination
        self.chat_id = str(chat_id)
        self.filter = content_filter
        self.source = source
        self.fetcher = fetcher
        # ids already counted against their sender but not yet delivered
        self._deferred: Set[str] = set()

    def forward(self, message: NormalizedMessage) -> bool:
        """Deliver one message. Returns True if it reached the destination.

        Failures are logged here and the message is dropped, except for
        `TransientNetworkError`, which is raised so the caller can hold the
        message and offer it again later.
        """
        log_extra = {"thread_id": message.thread_id, "message_id": message.id}
        try:
            delivered = self._forward(message)
        except TransientNetworkError as e:
            logger.warning("forward deferred: %s", e, extra=log_extra)
            self._deferred.add(message.id)
            raise
        except StaleMappingError as e:
            self._deferred.discard(message.id)
            logger.warning("sub-channel gone while sending: %s", e, extra=log_extra)
            self.topics.forget(message.thread_id)
            return False
        except Exception:
            self._deferred.discard(message.id)
            logger.exception("forward failed", extra=log_extra)
            return False
        self._deferred.discard(message.id)
        return delivered

    def _forward(self, message: NormalizedMessage) -> bool:
        raw = message.raw_payload if isinstance(message.raw_payload, RawMessage) else None
        username = raw.sender_username if raw is not None else ""
        log_extra = {"thread_id": message.thread_id, "message_id": message.id}

        if message.sender_id and message.id not in self._deferred:
            self.store.record_participant(message.sender_id, username=username or None)

        sid = self.topics.get_or_create_topic(message.thread_id, message.sender_id, username=username)
        if not sid:
            logger.warning("no sub-channel for thread; dropping message", extra=log_extra)
            return False
        log_extra["subchannel_id"] = sid

        term = self.filter.match(message.text)
        if term is not None:
            logger.info("blocked by filter %r", term, extra=log_extra)
            return False

        if not self.topics.verifier.exists(sid):
            logger.warning("sub-channel missing; dropping message and stale mapping", extra=log_extra)
            self.topics.forget(message.thread_id)
            return False

        delivered = self._dispatch(message, raw, sid)
        if delivered:
            self.store.touch_mapping(message.thread_id)
        return delivered

    def _dispatch(self, message: NormalizedMessage, raw: Optional[RawMessage], sid: str) -> bool:
        kind = message.type
        if kind is MessageType.TEXT:
            if not message.text:
                return False
            self.destination.send_text(self.chat_id, sid, message.text)
            return True

        filename = (raw.filename if raw is not None else "") or ""
        if kind in MEDIA_TYPES and raw is not None:
            data = self._media_bytes(raw)
            if data:
                payload = MediaPayload(
                    kind=kind,
                    data=data,
                    filename=filename or _DEFAULT_FILENAMES.get(kind, "file"),
                    caption=message.text,
                )
                try:
                    self.destination.send_media(self.chat_id, sid, payload)
                    return True
                except UnsupportedContentError as e:
                    logger.info(
                        "destination refused %s: %s",
                        kind.value,
                        e,
                        extra={"thread_id": message.thread_id, "message_id": message.id},
                    )

        self.destination.send_text(self.chat_id, sid, fallback_text(kind, message.text, filename))
        return True

    def _media_bytes(self, raw: RawMessage) -> Optional[bytes]:
        """Inline bytes, then the URL, then the source client."""
        if raw.media_bytes:
            return raw.media_bytes
        if raw.media_url and self.fetcher is not None:
            try:
                return self.fetcher.fetch(raw.media_url)
            except UnsupportedContentError as e:
                logger.info("media url unusable: %s", e, extra={"thread_id": raw.thread_id, "message_id": raw.id})
        if self.source is not None:
            return self.source.fetch_media(raw)
        return None
