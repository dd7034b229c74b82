"""
Reverse pipeline: destination sub-channel -> source thread.

Every handled event gets exactly one final reaction (success, error,
unknown or filtered). Media events get a processing reaction first and are
finished on the media worker pool.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..contracts.v1 import MEDIA_TYPES, AckMarker, DestinationEvent, MessageType
from ..errors import ConversionError
from ..kernel.filters import ContentFilter
from ..kernel.mapping_store import MappingStore
from ..kernel.media import MediaConverter, MediaWorkerPool
from ..ports.destination import DestinationChatClient
from ..ports.source import SourceMessagingClient

logger = logging.getLogger("topicbridge.reverse")


def document_fallback(name: str, size: int, caption: str = "") -> str:
    text = f"📎 Document: {name or 'file'} ({size / 1024:.1f} KB)"
    if caption:
        text += f"\n{caption}"
    return text


class ReversePipeline:
    def __init__(
        self,
        store: MappingStore,
        destination: DestinationChatClient,
        source: SourceMessagingClient,
        chat_id: str,
        content_filter: ContentFilter,
        converter: MediaConverter,
        pool: MediaWorkerPool,
    ):
        self.store = store
        self.destination = destination
        self.source = source
        self.chat_id = str(chat_id)
        self.filter = content_filter
        self.converter = converter
        self.pool = pool

    def handle(self, event: DestinationEvent) -> Optional[AckMarker]:
        """Route one destination event. Returns the marker set, or None if ignored.

        Never raises.
        """
        log_extra: Dict[str, Any] = {"subchannel_id": event.subchannel_id, "message_id": event.message_id}
        if event.chat_id != self.chat_id or not event.subchannel_id or not event.is_topic_message:
            return None

        try:
            thread_id = self.store.find_thread(event.subchannel_id)
            if not thread_id:
                return self._ack(event, AckMarker.UNKNOWN)
            log_extra["thread_id"] = thread_id

            term = self.filter.match(event.text or event.caption)
            if term is not None:
                logger.info("blocked by filter %r", term, extra=log_extra)
                return self._ack(event, AckMarker.FILTERED)

            if event.kind is MessageType.TEXT:
                self.source.send_text(thread_id, event.text)
                self.store.touch_mapping(thread_id)
                return self._ack(event, AckMarker.SUCCESS)

            if event.kind in MEDIA_TYPES:
                self._ack(event, AckMarker.PROCESSING)
                self.pool.submit(self._deliver_media, event, thread_id)
                return AckMarker.PROCESSING

            logger.info("unsupported content kind %s", event.kind.value, extra=log_extra)
            return self._ack(event, AckMarker.ERROR)
        except Exception:
            logger.exception("reverse delivery failed", extra=log_extra)
            return self._ack(event, AckMarker.ERROR)

    def _deliver_media(self, event: DestinationEvent, thread_id: str) -> AckMarker:
        log_extra = {"thread_id": thread_id, "subchannel_id": event.subchannel_id, "message_id": event.message_id}
        try:
            raw = self.destination.download(event)
            data, filename = self.converter.prepare(event.kind, raw, event.file_name)
            sent = self.source.send_media(thread_id, data, event.kind, filename)
            if not sent:
                logger.info("source refused %s; sending description", event.kind.value, extra=log_extra)
                if event.kind is MessageType.DOCUMENT:
                    self.source.send_text(thread_id, document_fallback(filename, event.file_size or len(raw), event.caption))
                else:
                    self.source.send_text(thread_id, f"[{event.kind.value}] {event.caption or filename}".rstrip())
            elif event.caption:
                self.source.send_text(thread_id, event.caption)
            self.store.touch_mapping(thread_id)
            return self._ack(event, AckMarker.SUCCESS)
        except ConversionError as e:
            logger.warning("conversion failed: %s", e, extra=log_extra)
            return self._ack(event, AckMarker.ERROR)
        except Exception:
            logger.exception("media delivery failed", extra=log_extra)
            return self._ack(event, AckMarker.ERROR)

    def _ack(self, event: DestinationEvent, marker: AckMarker) -> AckMarker:
        try:
            self.destination.set_reaction(event.chat_id, event.message_id, marker)
        except Exception as e:
            logger.debug("reaction %s failed: %s", marker.value, e, extra={"message_id": event.message_id})
        return marker
