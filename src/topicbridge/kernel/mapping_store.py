"""Mapping Store: thread <-> sub-channel pairs and participant profiles.

The backend is the source of truth; the dictionaries here mirror it and can
be rebuilt at any time with `load()`. New entities are written through
immediately; activity timestamps and message counters are batched and
written by `flush()`.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from ..contracts.v1 import ParticipantProfile, SubchannelMapping
from ..storage.base import PersistenceStore
from ..util.time import utc_now_iso

logger = logging.getLogger("topicbridge.store")


class MappingStore:
    def __init__(self, backend: PersistenceStore):
        self.backend = backend
        self._lock = threading.RLock()
        # held around every backend write of a chat record; always taken before _lock
        self._write_lock = threading.Lock()
        self._by_thread: Dict[str, SubchannelMapping] = {}
        self._by_subchannel: Dict[str, str] = {}
        self._profiles: Dict[str, ParticipantProfile] = {}
        self._filter_terms: Set[str] = set()
        self._dirty_mappings: Set[str] = set()
        self._dirty_profiles: Set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self) -> None:
        """(Re)build the in-memory mirror from the backend."""
        self.backend.open()
        chats = self.backend.find_all("chat")
        users = self.backend.find_all("user")
        filters = self.backend.find_all("filter")

        with self._lock:
            self._by_thread.clear()
            self._by_subchannel.clear()
            self._profiles.clear()
            self._filter_terms.clear()
            self._dirty_mappings.clear()
            self._dirty_profiles.clear()

            for data in chats:
                try:
                    mapping = SubchannelMapping.model_validate(data)
                except ValidationError:
                    logger.warning("skipping malformed chat record: %r", data)
                    continue
                owner = self._by_subchannel.get(mapping.subchannel_id)
                if owner is not None and owner != mapping.thread_id:
                    logger.warning(
                        "sub-channel %s claimed by threads %s and %s; keeping the first",
                        mapping.subchannel_id,
                        owner,
                        mapping.thread_id,
                        extra={"subchannel_id": mapping.subchannel_id},
                    )
                    continue
                self._by_thread[mapping.thread_id] = mapping
                self._by_subchannel[mapping.subchannel_id] = mapping.thread_id

            for data in users:
                try:
                    profile = ParticipantProfile.model_validate(data)
                except ValidationError:
                    logger.warning("skipping malformed user record: %r", data)
                    continue
                self._profiles[profile.participant_id] = profile

            for data in filters:
                term = str(data.get("term") or "").strip().lower()
                if term:
                    self._filter_terms.add(term)

        logger.info(
            "loaded mappings: %d chats, %d users, %d filters",
            len(self._by_thread),
            len(self._profiles),
            len(self._filter_terms),
        )

    def flush(self) -> None:
        """Persist batched activity / counter updates.

        Dirty records are snapshotted under the mirror lock and written
        outside it; lookups stay available while the backend is busy. On a
        backend error the snapshot is marked dirty again and the error
        propagates.
        """
        with self._write_lock:
            with self._lock:
                mappings = [self._by_thread[t] for t in self._dirty_mappings if t in self._by_thread]
                profiles = [self._profiles[p] for p in self._dirty_profiles if p in self._profiles]
                self._dirty_mappings.clear()
                self._dirty_profiles.clear()
            try:
                for m in mappings:
                    self.backend.upsert("chat", m.thread_id, m.to_record())
                for p in profiles:
                    self.backend.upsert("user", p.participant_id, p.to_record())
            except Exception:
                with self._lock:
                    self._dirty_mappings.update(m.thread_id for m in mappings if m.thread_id in self._by_thread)
                    self._dirty_profiles.update(p.participant_id for p in profiles)
                raise
            self.backend.flush()

    def close(self) -> None:
        self.flush()
        self.backend.close()

    # ------------------------------------------------------------------
    # Sub-channel mappings
    # ------------------------------------------------------------------

    def get_subchannel(self, thread_id: str) -> Optional[str]:
        with self._lock:
            m = self._by_thread.get(str(thread_id))
            return m.subchannel_id if m else None

    def get_mapping(self, thread_id: str) -> Optional[SubchannelMapping]:
        with self._lock:
            return self._by_thread.get(str(thread_id))

    def find_thread(self, subchannel_id: str) -> Optional[str]:
        with self._lock:
            return self._by_subchannel.get(str(subchannel_id))

    def mappings(self) -> List[SubchannelMapping]:
        with self._lock:
            return list(self._by_thread.values())

    def save_mapping(self, thread_id: str, subchannel_id: str, avatar_url: Optional[str] = None) -> SubchannelMapping:
        """Persist a pairing, then mirror it. Backend errors propagate."""
        tid, sid = str(thread_id), str(subchannel_id)
        now = utc_now_iso()
        with self._write_lock, self._lock:
            previous = self._by_thread.get(tid)
            mapping = SubchannelMapping(
                thread_id=tid,
                subchannel_id=sid,
                created_at=previous.created_at if previous and previous.subchannel_id == sid else now,
                last_activity=now,
                avatar_url=avatar_url or (previous.avatar_url if previous else None),
            )

            other = self._by_subchannel.get(sid)
            if other is not None and other != tid:
                logger.warning(
                    "sub-channel %s re-assigned from thread %s to %s",
                    sid,
                    other,
                    tid,
                    extra={"subchannel_id": sid, "thread_id": tid},
                )
                self.backend.delete("chat", other)
                self._by_thread.pop(other, None)
                self._dirty_mappings.discard(other)

            self.backend.upsert("chat", tid, mapping.to_record())

            if previous is not None and previous.subchannel_id != sid:
                self._by_subchannel.pop(previous.subchannel_id, None)
            self._by_thread[tid] = mapping
            self._by_subchannel[sid] = tid
            self._dirty_mappings.discard(tid)
        logger.debug("saved chat mapping %s -> %s", tid, sid, extra={"thread_id": tid, "subchannel_id": sid})
        return mapping

    def touch_mapping(self, thread_id: str) -> None:
        with self._lock:
            m = self._by_thread.get(str(thread_id))
            if m is None:
                return
            self._by_thread[m.thread_id] = m.model_copy(update={"last_activity": utc_now_iso()})
            self._dirty_mappings.add(m.thread_id)

    def set_avatar(self, thread_id: str, avatar_url: str) -> None:
        with self._write_lock, self._lock:
            m = self._by_thread.get(str(thread_id))
            if m is None:
                return
            updated = m.model_copy(update={"avatar_url": avatar_url})
            self.backend.upsert("chat", updated.thread_id, updated.to_record())
            self._by_thread[updated.thread_id] = updated

    def delete_mapping(self, thread_id: str) -> Optional[str]:
        """Forget a pairing. Returns the sub-channel id it pointed at."""
        tid = str(thread_id)
        with self._write_lock:
            with self._lock:
                m = self._by_thread.pop(tid, None)
                self._dirty_mappings.discard(tid)
                if m is not None:
                    self._by_subchannel.pop(m.subchannel_id, None)
            if m is None:
                return None
            try:
                self.backend.delete("chat", tid)
            except Exception:
                # The mirror is already clean; a stale record reappearing after
                # restart is detected again on first use.
                logger.exception("failed to delete chat mapping for %s", tid, extra={"thread_id": tid})
        logger.info(
            "deleted chat mapping %s -> %s",
            tid,
            m.subchannel_id,
            extra={"thread_id": tid, "subchannel_id": m.subchannel_id},
        )
        return m.subchannel_id

    # ------------------------------------------------------------------
    # Participant profiles
    # ------------------------------------------------------------------

    def get_participant(self, participant_id: str) -> Optional[ParticipantProfile]:
        with self._lock:
            return self._profiles.get(str(participant_id))

    def record_participant(
        self,
        participant_id: str,
        *,
        username: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> ParticipantProfile:
        """Create the profile on first sight, otherwise bump its counter."""
        pid = str(participant_id)
        now = utc_now_iso()
        with self._lock:
            existing = self._profiles.get(pid)
            if existing is None:
                profile = ParticipantProfile(
                    participant_id=pid,
                    username=username or None,
                    full_name=full_name or None,
                    first_seen=now,
                    message_count=1,
                    last_seen=now,
                )
                self.backend.upsert("user", pid, profile.to_record())
                self._profiles[pid] = profile
                return profile

            patch: Dict[str, Any] = {
                "message_count": existing.message_count + 1,
                "last_seen": now,
            }
            if username:
                patch["username"] = username
            if full_name:
                patch["full_name"] = full_name
            profile = existing.model_copy(update=patch)
            self._profiles[pid] = profile
            self._dirty_profiles.add(pid)
            return profile

    # ------------------------------------------------------------------
    # Filter terms
    # ------------------------------------------------------------------

    def filter_terms(self) -> List[str]:
        with self._lock:
            return sorted(self._filter_terms)

    def add_filter_term(self, term: str) -> None:
        t = str(term or "").strip().lower()
        if not t:
            return
        with self._lock:
            self.backend.upsert("filter", t, {"term": t, "createdAt": utc_now_iso()})
            self._filter_terms.add(t)

    def remove_filter_term(self, term: str) -> bool:
        t = str(term or "").strip().lower()
        with self._lock:
            self._filter_terms.discard(t)
            return self.backend.delete("filter", t)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "chats": len(self._by_thread),
                "users": len(self._profiles),
                "filters": len(self._filter_terms),
                "dirty": len(self._dirty_mappings) + len(self._dirty_profiles),
            }
