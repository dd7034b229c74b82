"""Topic Mapper: thread -> forum sub-channel, created lazily and at most once.

Creation is single-flight per thread: the first caller performs it, later
callers for the same thread block on the in-flight entry and share its
result. The entry is removed on success and on failure, so a failed
creation is retried from scratch by the next caller.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from ..contracts.v1 import MediaPayload, MessageType
from ..errors import TransientNetworkError
from ..ports.destination import DestinationChatClient
from ..ports.source import SourceMessagingClient
from ..util.time import parse_utc_iso
from .mapping_store import MappingStore

logger = logging.getLogger("topicbridge.topics")


def display_name(thread_id: str, participant_id: str = "", username: str = "") -> str:
    u = str(username or "").strip().lstrip("@")
    if u:
        return f"@{u}"
    if participant_id:
        return f"User {participant_id}"
    return f"Chat {str(thread_id)[:10]}..."


class SubchannelVerifier:
    """Caches `subchannel_exists` results for `ttl_seconds`."""

    def __init__(
        self,
        destination: DestinationChatClient,
        chat_id: str,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.destination = destination
        self.chat_id = str(chat_id)
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: Dict[str, Tuple[bool, float]] = {}

    def exists(self, subchannel_id: str) -> bool:
        sid = str(subchannel_id)
        now = self._clock()
        with self._lock:
            hit = self._cache.get(sid)
        if hit is not None and self.ttl_seconds > 0 and now - hit[1] < self.ttl_seconds:
            return hit[0]

        ok = bool(self.destination.subchannel_exists(self.chat_id, sid))
        with self._lock:
            self._cache[sid] = (ok, now)
        return ok

    def invalidate(self, subchannel_id: Optional[str]) -> None:
        if not subchannel_id:
            return
        with self._lock:
            self._cache.pop(str(subchannel_id), None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


class _Flight:
    __slots__ = ("done", "result", "error")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Optional[str] = None
        self.error: Optional[TransientNetworkError] = None


class TopicMapper:
    def __init__(
        self,
        store: MappingStore,
        destination: DestinationChatClient,
        chat_id: str,
        *,
        source: Optional[SourceMessagingClient] = None,
        welcome_message: bool = True,
        profile_pic_sync: bool = True,
        verify_ttl_seconds: float = 60.0,
    ):
        self.store = store
        self.destination = destination
        self.chat_id = str(chat_id)
        self.source = source
        self.welcome_message = welcome_message
        self.profile_pic_sync = profile_pic_sync
        self.verifier = SubchannelVerifier(destination, self.chat_id, ttl_seconds=verify_ttl_seconds)

        self._cond = threading.Condition(threading.Lock())
        self._inflight: Dict[str, _Flight] = {}

    @property
    def inflight_count(self) -> int:
        with self._cond:
            return len(self._inflight)

    def get_or_create_topic(
        self,
        thread_id: str,
        participant_id: str = "",
        *,
        username: str = "",
        full_name: str = "",
    ) -> Optional[str]:
        """Return the sub-channel id for `thread_id`, creating it if needed.

        Returns None when creation failed; nothing is cached in that case.
        A transient destination failure is raised to every waiting caller
        so the message can be retried.
        """
        tid = str(thread_id)
        with self._cond:
            cached = self.store.get_subchannel(tid)
            if cached:
                return cached
            flight = self._inflight.get(tid)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._inflight[tid] = flight

        assert flight is not None
        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.result

        result: Optional[str] = None
        try:
            result = self._create(tid, str(participant_id or ""), username, full_name)
        except TransientNetworkError as e:
            flight.error = e
            raise
        finally:
            with self._cond:
                flight.result = result
                self._inflight.pop(tid, None)
                flight.done.set()
                self._cond.notify_all()
        return result

    def forget(self, thread_id: str) -> Optional[str]:
        """Drop a stale mapping; the next message recreates the sub-channel."""
        sid = self.store.delete_mapping(thread_id)
        self.verifier.invalidate(sid)
        return sid

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no creation is in flight."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._inflight, timeout=timeout)

    def _create(self, thread_id: str, participant_id: str, username: str, full_name: str) -> Optional[str]:
        profile = self.store.get_participant(participant_id) if participant_id else None
        if profile is not None:
            username = username or (profile.username or "")
            full_name = full_name or (profile.full_name or "")
        name = display_name(thread_id, participant_id, username)

        try:
            sid = self.destination.create_subchannel(self.chat_id, name)
        except TransientNetworkError as e:
            logger.warning("sub-channel creation for %s deferred: %s", thread_id, e, extra={"thread_id": thread_id})
            raise
        except Exception:
            logger.exception("sub-channel creation failed for %s", thread_id, extra={"thread_id": thread_id})
            return None
        if not sid:
            logger.error("destination returned no sub-channel id for %s", thread_id, extra={"thread_id": thread_id})
            return None

        try:
            self.store.save_mapping(thread_id, sid)
        except Exception:
            logger.exception(
                "could not persist mapping %s -> %s",
                thread_id,
                sid,
                extra={"thread_id": thread_id, "subchannel_id": sid},
            )
            return None
        self.verifier.invalidate(sid)
        logger.info(
            "created sub-channel %r for thread %s",
            name,
            thread_id,
            extra={"thread_id": thread_id, "subchannel_id": sid, "participant_id": participant_id},
        )

        if self.welcome_message:
            self._send_welcome(sid, participant_id, username, full_name, profile.first_seen if profile else "")
        if self.profile_pic_sync and participant_id:
            self._sync_profile_pic(thread_id, sid, participant_id)
        return sid

    def _send_welcome(self, sid: str, participant_id: str, username: str, full_name: str, first_seen: str) -> None:
        esc = self.destination.escape
        when = parse_utc_iso(first_seen) if first_seen else None
        lines = ["*New conversation*", ""]
        if username:
            lines.append(f"👤 *User:* {esc('@' + username.lstrip('@'))}")
        if participant_id:
            lines.append(f"🆔 *ID:* `{esc(participant_id)}`")
        if full_name:
            lines.append(f"📛 *Name:* {esc(full_name)}")
        if when is not None:
            lines.append(f"📅 *First contact:* {esc(when.strftime('%Y-%m-%d %H:%M UTC'))}")
        try:
            message_id = self.destination.send_text(self.chat_id, sid, "\n".join(lines), parse_mode="MarkdownV2")
            if message_id:
                self.destination.pin_message(self.chat_id, message_id)
        except Exception as e:
            logger.warning("welcome card failed in %s: %s", sid, e, extra={"subchannel_id": sid})

    def _sync_profile_pic(self, thread_id: str, sid: str, participant_id: str) -> None:
        if self.source is None:
            return
        try:
            url = self.source.get_profile_pic_url(participant_id)
            if not url:
                return
            self.destination.send_media(
                self.chat_id,
                sid,
                MediaPayload(kind=MessageType.PHOTO, url=url, caption="📸 Profile Picture"),
            )
            self.store.set_avatar(thread_id, url)
        except Exception as e:
            logger.warning(
                "profile picture sync failed for %s: %s",
                participant_id,
                e,
                extra={"participant_id": participant_id, "subchannel_id": sid},
            )
