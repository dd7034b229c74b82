"""
Telegram Bot API destination for the bridge.

One forum supergroup holds every conversation; each source thread gets a
forum topic (message_thread_id). Reuses the long-poll/getUpdates client,
JSON-body API wrapper and per-chat rate limiter of the IM adapter.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
import urllib.error
import urllib.request
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from ..contracts.v1 import AckMarker, DestinationEvent, MediaPayload, MessageType
from ..errors import (
    AuthExpiredError,
    BridgeError,
    StaleMappingError,
    TransientNetworkError,
    UnsupportedContentError,
)
from .destination import DestinationChatClient

logger = logging.getLogger("topicbridge.telegram")

# Telegram API limits
TELEGRAM_MAX_MESSAGE_LENGTH = 4096
TELEGRAM_MAX_CAPTION_LENGTH = 1024
TELEGRAM_MAX_TOPIC_NAME = 128
TELEGRAM_MAX_UPLOAD_BYTES = 50 * 1024 * 1024

TOPIC_ICON_COLOR = 0x7ABA3C

REACTION_EMOJI: Dict[AckMarker, str] = {
    AckMarker.SUCCESS: "👍",
    AckMarker.ERROR: "👎",
    AckMarker.UNKNOWN: "🤔",
    AckMarker.FILTERED: "🙈",
    AckMarker.PROCESSING: "👀",
}

_STALE_MARKERS = ("message thread not found", "topic_deleted", "topic_id_invalid")
# A closed topic still exists; sends fail until a moderator reopens it.
_CLOSED_MARKERS = ("topic_closed",)
_UNSUPPORTED_MARKERS = (
    "wrong file",
    "image_process_failed",
    "failed to get http url content",
    "wrong type of the web page content",
    "file is too big",
    "photo_invalid_dimensions",
)
_SERVICE_KEYS = (
    "forum_topic_created",
    "forum_topic_edited",
    "forum_topic_closed",
    "forum_topic_reopened",
    "general_forum_topic_hidden",
    "general_forum_topic_unhidden",
    "pinned_message",
    "new_chat_members",
    "left_chat_member",
    "new_chat_title",
    "new_chat_photo",
    "delete_chat_photo",
)
_MARKDOWN_V2_SPECIAL = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")

# kind -> (method, multipart field)
_MEDIA_METHODS: Dict[MessageType, Tuple[str, str]] = {
    MessageType.PHOTO: ("sendPhoto", "photo"),
    MessageType.VIDEO: ("sendVideo", "video"),
    MessageType.VOICE: ("sendVoice", "voice"),
    MessageType.DOCUMENT: ("sendDocument", "document"),
}


class RateLimiter:
    """Per-chat send budget: a minimum spacing plus a sliding one-minute cap.

    Telegram allows roughly one message per second into a chat and about
    twenty per minute into a group; going over earns 429 responses.
    """

    def __init__(
        self,
        max_per_second: float = 1.0,
        max_per_minute: int = 20,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = 1.0 / max_per_second
        self.max_per_minute = max(1, int(max_per_minute))
        self._clock = clock
        self._sleep = sleep
        self._sent: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def acquire(self, chat_id: str) -> float:
        """Claim a send slot; returns 0 on success or the seconds to wait."""
        with self._lock:
            now = self._clock()
            sent = self._sent.setdefault(chat_id, deque())
            while sent and now - sent[0] >= 60.0:
                sent.popleft()
            wait = 0.0
            if sent:
                wait = self.min_interval - (now - sent[-1])
            if len(sent) >= self.max_per_minute:
                wait = max(wait, 60.0 - (now - sent[0]))
            if wait > 0:
                return wait
            sent.append(now)
            return 0.0

    def wait_and_acquire(self, chat_id: str) -> None:
        wait_time = self.acquire(chat_id)
        while wait_time > 0:
            self._sleep(wait_time)
            wait_time = self.acquire(chat_id)


def escape_markdown_v2(text: str) -> str:
    return _MARKDOWN_V2_SPECIAL.sub(r"\\\1", str(text or ""))


def split_text(text: str, limit: int = TELEGRAM_MAX_MESSAGE_LENGTH) -> List[str]:
    """Split on the hard length limit without altering any characters."""
    if len(text) <= limit:
        return [text]
    chunks: List[str] = []
    rest = text
    while len(rest) > limit:
        cut = rest.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        else:
            cut += 1  # newline stays with the first chunk
        chunks.append(rest[:cut])
        rest = rest[cut:]
    if rest:
        chunks.append(rest)
    return chunks


def _classify(method: str, resp: Dict[str, Any], subchannel_id: str = "") -> BridgeError:
    desc = str(resp.get("description") or resp.get("error") or "unknown error")
    low = desc.lower()
    status = int(resp.get("http_status") or resp.get("error_code") or 0)

    if resp.get("network"):
        return TransientNetworkError(f"{method}: {desc}")
    if status == 401:
        return AuthExpiredError(f"{method}: {desc}")
    if status == 429:
        return TransientNetworkError(f"{method}: {desc}", retry_after=resp.get("retry_after"))
    if status >= 500:
        return TransientNetworkError(f"{method}: {desc}")
    if any(m in low for m in _CLOSED_MARKERS):
        logger.warning(
            "topic %s is closed; %s not delivered", subchannel_id or "?", method, extra={"subchannel_id": subchannel_id}
        )
        return BridgeError(f"{method}: topic closed: {desc}")
    if subchannel_id and any(m in low for m in _STALE_MARKERS):
        return StaleMappingError(subchannel_id, f"{method}: {desc}")
    if any(m in low for m in _UNSUPPORTED_MARKERS):
        return UnsupportedContentError(f"{method}: {desc}")
    return BridgeError(f"{method}: HTTP {status} {desc}")


def _message_kind(msg: Dict[str, Any]) -> Optional[MessageType]:
    if any(k in msg for k in _SERVICE_KEYS):
        return None
    if msg.get("text") is not None:
        return MessageType.TEXT
    if isinstance(msg.get("photo"), list) and msg.get("photo"):
        return MessageType.PHOTO
    if isinstance(msg.get("video"), dict) or isinstance(msg.get("video_note"), dict):
        return MessageType.VIDEO
    if isinstance(msg.get("voice"), dict):
        return MessageType.VOICE
    if isinstance(msg.get("document"), dict) or isinstance(msg.get("audio"), dict):
        return MessageType.DOCUMENT
    return MessageType.OTHER


def _file_meta(msg: Dict[str, Any], kind: MessageType) -> Dict[str, Any]:
    if kind is MessageType.PHOTO:
        f = msg["photo"][-1]  # largest size
        fid = str(f.get("file_id") or "")
        return {"file_id": fid, "file_name": f"photo_{fid[:16]}.jpg", "mime_type": "image/jpeg", "file_size": f.get("file_size")}
    for key, default_name in (
        ("video", "video.mp4"),
        ("video_note", "video_note.mp4"),
        ("voice", "voice.ogg"),
        ("document", "document"),
        ("audio", "audio"),
    ):
        f = msg.get(key)
        if isinstance(f, dict):
            return {
                "file_id": str(f.get("file_id") or ""),
                "file_name": str(f.get("file_name") or default_name),
                "mime_type": str(f.get("mime_type") or ""),
                "file_size": f.get("file_size"),
            }
    return {}


class TelegramChatClient(DestinationChatClient):
    """
    Telegram Bot API client using long-poll getUpdates.
    """

    platform = "telegram"

    def __init__(
        self,
        token: str,
        *,
        poll_timeout: int = 25,
        max_per_second: float = 1.0,
        max_per_minute: int = 20,
    ):
        self.token = token
        self.poll_timeout = int(poll_timeout)

        self._offset = 0
        self._rate_limiter = RateLimiter(max_per_second=max_per_second, max_per_minute=max_per_minute)
        self._connected = False
        self._bot_info: Optional[Dict[str, Any]] = None

    def _api(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: int = 35,
    ) -> Dict[str, Any]:
        """
        Call Telegram Bot API.

        Uses JSON body for consistent encoding (handles non-ASCII text).
        """
        url = f"https://api.telegram.org/bot{self.token}/{method}"
        data = json.dumps(params or {}, ensure_ascii=False).encode("utf-8")

        req = urllib.request.Request(url, data=data, method="POST")
        req.add_header("Content-Type", "application/json; charset=utf-8")
        req.add_header("Accept", "application/json")
        return self._send(method, req, timeout)

    def _send(self, method: str, req: urllib.request.Request, timeout: int) -> Dict[str, Any]:
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                body = resp.read().decode("utf-8", errors="replace")
                return json.loads(body)
        except urllib.error.HTTPError as e:
            out: Dict[str, Any] = {"ok": False, "http_status": e.code, "error": str(e)}
            try:
                err = json.loads(e.read().decode("utf-8", "ignore") or "{}")
                out["description"] = err.get("description", "")
                out["error_code"] = err.get("error_code", e.code)
                params = err.get("parameters") or {}
                if params.get("retry_after") is not None:
                    out["retry_after"] = float(params["retry_after"])
            except ValueError:
                pass
            logger.debug("api %s: HTTP %s %s", method, e.code, out.get("description", ""), extra={"platform": "telegram"})
            return out
        except (urllib.error.URLError, TimeoutError, OSError, ValueError) as e:
            logger.debug("api %s: %s", method, e, extra={"platform": "telegram"})
            return {"ok": False, "error": str(e), "network": True}

    def _call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        timeout: int = 15,
        subchannel_id: str = "",
    ) -> Any:
        resp = self._api(method, params, timeout=timeout)
        if resp.get("ok"):
            return resp.get("result")
        raise _classify(method, resp, subchannel_id)

    def connect(self) -> None:
        """Verify token and get bot info."""
        self._bot_info = self._call("getMe", timeout=10) or {}
        self._connected = True
        logger.info("connected as @%s", self._bot_info.get("username", "unknown"), extra={"platform": "telegram"})

    def disconnect(self) -> None:
        self._connected = False
        logger.info("disconnected", extra={"platform": "telegram"})

    def poll(self) -> List[DestinationEvent]:
        """
        Long-poll for new messages using getUpdates.

        Returns normalized events; service messages are dropped here.
        """
        if not self._connected:
            return []

        result = self._call(
            "getUpdates",
            {
                "offset": self._offset,
                "timeout": self.poll_timeout,
                # Edited messages are ignored to avoid duplicate deliveries.
                "allowed_updates": ["message"],
            },
            timeout=self.poll_timeout + 10,
        )

        events: List[DestinationEvent] = []
        for update in result if isinstance(result, list) else []:
            try:
                update_id = int(update.get("update_id", 0))
            except (TypeError, ValueError):
                continue
            self._offset = max(self._offset, update_id + 1)

            msg = update.get("message")
            if not isinstance(msg, dict):
                continue
            kind = _message_kind(msg)
            if kind is None:
                continue

            chat = msg.get("chat") or {}
            sender = msg.get("from") or {}
            meta = _file_meta(msg, kind)
            try:
                events.append(
                    DestinationEvent(
                        chat_id=str(chat.get("id", "")),
                        subchannel_id=str(msg.get("message_thread_id") or ""),
                        message_id=str(msg.get("message_id", "")),
                        kind=kind,
                        text=msg.get("text") or "",
                        caption=msg.get("caption") or "",
                        file_id=meta.get("file_id", ""),
                        file_name=meta.get("file_name", ""),
                        file_size=int(meta.get("file_size") or 0),
                        mime_type=meta.get("mime_type", ""),
                        chat_type=str(chat.get("type") or ""),
                        is_topic_message=bool(msg.get("is_topic_message")),
                        from_user=str(sender.get("username") or sender.get("first_name") or ""),
                        update_id=update_id,
                    )
                )
            except ValueError as e:
                logger.warning("skipping unparsable update %s: %s", update_id, e, extra={"platform": "telegram"})
        return events

    def download(self, event: DestinationEvent) -> bytes:
        if not event.file_id:
            raise UnsupportedContentError("event carries no file")
        meta = self._call("getFile", {"file_id": event.file_id}, timeout=15) or {}
        file_path = str(meta.get("file_path") or "").strip()
        if not file_path:
            raise UnsupportedContentError("file is not downloadable (too big or expired)")

        url = f"https://api.telegram.org/file/bot{self.token}/{file_path}"
        req = urllib.request.Request(url, method="GET")
        try:
            with urllib.request.urlopen(req, timeout=60) as resp:
                return resp.read()
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise TransientNetworkError(f"download failed: {e}") from e

    def create_subchannel(self, chat_id: str, name: str) -> str:
        topic = self._call(
            "createForumTopic",
            {"chat_id": chat_id, "name": name[:TELEGRAM_MAX_TOPIC_NAME], "icon_color": TOPIC_ICON_COLOR},
        )
        thread_id = (topic or {}).get("message_thread_id")
        if not thread_id:
            raise BridgeError("createForumTopic returned no message_thread_id")
        return str(thread_id)

    def send_text(
        self,
        chat_id: str,
        subchannel_id: str,
        text: str,
        parse_mode: Optional[str] = None,
    ) -> Optional[str]:
        if not text:
            return None
        last_id: Optional[str] = None
        for chunk in split_text(text):
            params: Dict[str, Any] = {
                "chat_id": chat_id,
                "text": chunk,
                "disable_web_page_preview": True,
            }
            if subchannel_id:
                params["message_thread_id"] = int(subchannel_id)
            if parse_mode:
                params["parse_mode"] = parse_mode
            self._rate_limiter.wait_and_acquire(str(chat_id))
            sent = self._call("sendMessage", params, subchannel_id=subchannel_id) or {}
            last_id = str(sent.get("message_id", "")) or last_id
        return last_id

    def send_media(self, chat_id: str, subchannel_id: str, payload: MediaPayload) -> Optional[str]:
        method, field = _MEDIA_METHODS.get(payload.kind, ("", ""))
        if not method:
            raise UnsupportedContentError(f"no upload method for {payload.kind.value}")
        if payload.kind is MessageType.VOICE and not self._is_ogg(payload):
            method, field = "sendAudio", "audio"

        fields: List[Tuple[str, str]] = [("chat_id", str(chat_id))]
        if subchannel_id:
            fields.append(("message_thread_id", str(int(subchannel_id))))
        if payload.caption:
            fields.append(("caption", payload.caption[:TELEGRAM_MAX_CAPTION_LENGTH]))

        self._rate_limiter.wait_and_acquire(str(chat_id))
        if payload.url:
            params: Dict[str, Any] = dict(fields)
            params[field] = payload.url
            sent = self._call(method, params, timeout=60, subchannel_id=subchannel_id) or {}
            return str(sent.get("message_id", "")) or None

        raw = payload.data or b""
        if not raw:
            raise UnsupportedContentError("empty media payload")
        if len(raw) > TELEGRAM_MAX_UPLOAD_BYTES:
            raise UnsupportedContentError(f"{len(raw)} bytes exceeds upload limit")
        resp = self._upload(method, fields, field, payload.filename or field, raw, payload.mime_type)
        if resp.get("ok"):
            return str((resp.get("result") or {}).get("message_id", "")) or None
        raise _classify(method, resp, subchannel_id)

    @staticmethod
    def _is_ogg(payload: MediaPayload) -> bool:
        name = (payload.filename or "").lower()
        mime = (payload.mime_type or "").lower()
        return name.endswith((".ogg", ".oga", ".opus")) or mime in ("audio/ogg", "audio/opus")

    def _upload(
        self,
        method: str,
        fields: List[Tuple[str, str]],
        file_field: str,
        filename: str,
        raw: bytes,
        mime_type: str = "",
    ) -> Dict[str, Any]:
        boundary = "----topicbridge" + uuid.uuid4().hex
        url = f"https://api.telegram.org/bot{self.token}/{method}"

        body = b""
        for k, v in fields:
            body += (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{k}"\r\n\r\n'
                f"{v}\r\n"
            ).encode("utf-8")

        safe_fn = (filename or "file").replace("\\", "_").replace("/", "_").replace('"', "_")
        body += (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{file_field}"; filename="{safe_fn}"\r\n'
            f"Content-Type: {mime_type or 'application/octet-stream'}\r\n\r\n"
        ).encode("utf-8")
        body += raw
        body += f"\r\n--{boundary}--\r\n".encode("utf-8")

        req = urllib.request.Request(url, data=body, method="POST")
        req.add_header("Content-Type", f"multipart/form-data; boundary={boundary}")
        req.add_header("Accept", "application/json")
        return self._send(method, req, 120)

    def set_reaction(self, chat_id: str, message_id: str, marker: AckMarker) -> None:
        emoji = REACTION_EMOJI.get(marker, "🤔")
        try:
            self._call(
                "setMessageReaction",
                {
                    "chat_id": chat_id,
                    "message_id": int(message_id),
                    "reaction": [{"type": "emoji", "emoji": emoji}],
                },
                timeout=10,
            )
        except BridgeError as e:
            # Reactions are cosmetic acknowledgements.
            logger.debug("set reaction %s on %s failed: %s", marker.value, message_id, e, extra={"platform": "telegram"})

    def pin_message(self, chat_id: str, message_id: str) -> None:
        self._call(
            "pinChatMessage",
            {"chat_id": chat_id, "message_id": int(message_id), "disable_notification": True},
            timeout=10,
        )

    def subchannel_exists(self, chat_id: str, subchannel_id: str) -> bool:
        """Check the topic with a chat action; only a definitive 'not found' counts as missing."""
        try:
            self._call(
                "sendChatAction",
                {"chat_id": chat_id, "message_thread_id": int(subchannel_id), "action": "typing"},
                timeout=10,
                subchannel_id=str(subchannel_id),
            )
            return True
        except StaleMappingError:
            return False
        except BridgeError as e:
            logger.debug("could not verify topic %s: %s", subchannel_id, e, extra={"subchannel_id": subchannel_id})
            return True

    def escape(self, text: str) -> str:
        return escape_markdown_v2(text)
