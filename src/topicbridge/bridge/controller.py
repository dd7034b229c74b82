"""
Bridge lifecycle: wiring, start/stop, degraded mode and recovery.

    UNINITIALIZED -> INITIALIZING -> RUNNING <-> DEGRADED
                                   any -> SHUTTING_DOWN -> STOPPED

A failed initialization leaves the controller disabled; build a new one
after fixing the configuration.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import ConfigurationError
from ..kernel.dedup import DedupWindow
from ..kernel.filters import ContentFilter
from ..kernel.mapping_store import MappingStore
from ..kernel.media import FfmpegTranscoder, MediaConverter, MediaFetcher, MediaWorkerPool, Transcoder
from ..kernel.settings import BridgeSettings
from ..kernel.topics import TopicMapper
from ..paths import chat_lock_path
from ..ports.destination import DestinationChatClient
from ..ports.source import SourceMessagingClient
from ..storage import build_store
from ..storage.base import PersistenceStore
from ..util.file_lock import LockUnavailableError, OwnershipLock
from ..util.fs import empty_dir
from .forward import ForwardPipeline
from .listeners import Backoff, DestinationListener, PollingListener, SourceListener
from .reverse import ReversePipeline

logger = logging.getLogger("topicbridge.controller")

DESTINATION_POLL_INTERVAL = 0.2


class BridgeState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    RUNNING = "running"
    DEGRADED = "degraded"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class BridgeController:
    """
    Owns every component of one bridge instance.

    Coordinates:
    - Mapping store (load on start, flush on heartbeat and stop)
    - Source and destination listeners
    - Topic mapper, pipelines and media worker pool
    - Recovery after auth-class failures
    """

    def __init__(
        self,
        settings: BridgeSettings,
        source: SourceMessagingClient,
        destination: DestinationChatClient,
        *,
        backend: Optional[PersistenceStore] = None,
        transcoder: Optional[Transcoder] = None,
        fetcher: Optional[MediaFetcher] = None,
        use_chat_lock: bool = True,
    ):
        self.settings = settings
        self.source = source
        self.destination = destination
        self._backend = backend
        self._transcoder = transcoder
        self._fetcher = fetcher
        self.use_chat_lock = use_chat_lock

        self.state = BridgeState.UNINITIALIZED
        self.enabled = True
        self.last_error = ""
        self.started_at = 0.0

        self.store: Optional[MappingStore] = None
        self.filter: Optional[ContentFilter] = None
        self.dedup: Optional[DedupWindow] = None
        self.topics: Optional[TopicMapper] = None
        self.pool: Optional[MediaWorkerPool] = None
        self.forward: Optional[ForwardPipeline] = None
        self.reverse: Optional[ReversePipeline] = None
        self.listeners: List[PollingListener] = []

        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._stopped = threading.Event()
        self._chat_lock: Optional[OwnershipLock] = None
        self._heartbeat: Optional[threading.Thread] = None
        self._recovery: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, state: BridgeState) -> None:
        with self._lock:
            if self.state is state:
                return
            logger.info("state %s -> %s", self.state.value, state.value, extra={"state": state.value})
            self.state = state

    def dispatch_paused(self) -> bool:
        return self.state is not BridgeState.RUNNING

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Initialize and attach listeners. Returns True once RUNNING."""
        with self._lock:
            if not self.enabled:
                logger.warning("bridge is disabled after a failed start: %s", self.last_error)
                return False
            if self.state is not BridgeState.UNINITIALIZED:
                return self.state is BridgeState.RUNNING
            self._set_state(BridgeState.INITIALIZING)

        try:
            self._initialize()
        except Exception as e:
            self.last_error = str(e)
            self.enabled = False
            if isinstance(e, ConfigurationError):
                logger.error("configuration error: %s", e)
            else:
                logger.exception("bridge initialization failed")
            self._teardown()
            self._set_state(BridgeState.UNINITIALIZED)
            return False

        self.started_at = time.time()
        self._set_state(BridgeState.RUNNING)
        for listener in self.listeners:
            listener.start()
        self._heartbeat = threading.Thread(target=self._heartbeat_loop, name="topicbridge-heartbeat", daemon=True)
        self._heartbeat.start()
        logger.info("bridge running for chat %s", self.settings.destination.chat_id)
        return True

    def _initialize(self) -> None:
        s = self.settings
        s.require_destination()
        chat_id = s.destination.chat_id

        if self.use_chat_lock:
            try:
                self._chat_lock = OwnershipLock(chat_lock_path(chat_id)).acquire()
            except LockUnavailableError as e:
                raise ConfigurationError(f"another bridge instance owns chat {chat_id}") from e

        self.store = MappingStore(self._backend or build_store(s.storage))
        self.store.load()
        self.filter = ContentFilter(list(s.blocked_terms) + self.store.filter_terms())

        self.destination.connect()
        self.source.login()

        self.topics = TopicMapper(
            self.store,
            self.destination,
            chat_id,
            source=self.source,
            welcome_message=s.welcome_message,
            profile_pic_sync=s.profile_pic_sync,
            verify_ttl_seconds=s.topic_verify_ttl_seconds,
        )
        converter = MediaConverter(
            self._transcoder or FfmpegTranscoder(s.media.ffmpeg_path, timeout_seconds=s.media.timeout_seconds),
            s.media.resolved_temp_dir(),
        )
        self.pool = MediaWorkerPool(s.media.max_concurrent_conversions)
        if self._fetcher is None:
            self._fetcher = MediaFetcher()
        self.forward = ForwardPipeline(
            self.store,
            self.topics,
            self.destination,
            chat_id,
            self.filter,
            source=self.source,
            fetcher=self._fetcher,
        )
        self.reverse = ReversePipeline(
            self.store, self.destination, self.source, chat_id, self.filter, converter, self.pool
        )

        watermark = time.time() if s.skip_backlog else 0.0
        self.dedup = DedupWindow(s.max_dedup_window, high_watermark=watermark)

        r = s.recovery
        self.listeners = [
            SourceListener(
                self.source,
                self.dedup,
                self.forward,
                interval=s.poll_interval_seconds,
                backoff=Backoff(r.backoff_initial_seconds, r.backoff_max_seconds),
                on_auth_error=self._on_auth_error,
                paused=self.dispatch_paused,
            ),
            DestinationListener(
                self.destination,
                self.reverse,
                interval=DESTINATION_POLL_INTERVAL,
                backoff=Backoff(r.backoff_initial_seconds, r.backoff_max_seconds),
                on_auth_error=self._on_auth_error,
                paused=self.dispatch_paused,
            ),
        ]

    # ------------------------------------------------------------------
    # Degraded mode
    # ------------------------------------------------------------------

    def _on_auth_error(self, listener: str, exc: Exception) -> None:
        with self._lock:
            if self.state is not BridgeState.RUNNING:
                return
            self.last_error = f"{listener}: {exc}"
            self._set_state(BridgeState.DEGRADED)
            self._recovery = threading.Thread(
                target=self._recover,
                args=(listener,),
                name="topicbridge-recovery",
                daemon=True,
            )
            self._recovery.start()

    def _recover(self, listener: str) -> None:
        r = self.settings.recovery
        backoff = Backoff(r.backoff_initial_seconds, r.backoff_max_seconds)
        for attempt in range(1, r.max_attempts + 1):
            if self._stop_event.is_set():
                return
            try:
                if listener == "source":
                    self.source.login()
                else:
                    self.destination.connect()
            except ConfigurationError as e:
                self.last_error = f"cannot recover {listener}: {e}"
                break
            except Exception as e:
                delay = backoff.next_delay()
                logger.warning(
                    "recovery attempt %d/%d for %s failed: %s",
                    attempt,
                    r.max_attempts,
                    listener,
                    e,
                    extra={"platform": listener},
                )
                self.last_error = f"{listener}: {e}"
                if self._stop_event.wait(delay):
                    return
                continue
            with self._lock:
                if self.state is BridgeState.DEGRADED:
                    self._set_state(BridgeState.RUNNING)
            logger.info("recovered %s after %d attempt(s)", listener, attempt, extra={"platform": listener})
            return

        logger.error("bridge cannot recover: %s", self.last_error, extra={"platform": listener})
        self.enabled = False
        self.stop()

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _heartbeat_loop(self) -> None:
        while not self._stop_event.wait(self.settings.heartbeat_seconds):
            self.heartbeat()

    def heartbeat(self) -> Dict[str, Any]:
        """Flush batched store updates and log a status snapshot."""
        if self.store is not None:
            try:
                self.store.flush()
            except Exception:
                logger.exception("store flush failed")
        snapshot = self.status()
        logger.info(
            "heartbeat: %d chats, %d users, %d creating, %d media jobs",
            snapshot["store"].get("chats", 0),
            snapshot["store"].get("users", 0),
            snapshot["inflight_creations"],
            snapshot["media_jobs"],
            extra={"state": snapshot["state"]},
        )
        return snapshot

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "enabled": self.enabled,
            "chat_id": self.settings.destination.chat_id,
            "uptime_seconds": int(time.time() - self.started_at) if self.started_at else 0,
            "store": self.store.stats() if self.store is not None else {},
            "inflight_creations": self.topics.inflight_count if self.topics is not None else 0,
            "media_jobs": self.pool.pending if self.pool is not None else 0,
            "dedup_size": len(self.dedup) if self.dedup is not None else 0,
            "high_watermark": self.dedup.high_watermark if self.dedup is not None else 0.0,
            "last_error": self.last_error,
        }

    # ------------------------------------------------------------------
    # Filter terms
    # ------------------------------------------------------------------

    def add_blocked_term(self, term: str) -> None:
        if self.store is None or self.filter is None:
            raise RuntimeError("bridge is not initialized")
        self.store.add_filter_term(term)
        self.filter.add(term)

    def remove_blocked_term(self, term: str) -> bool:
        if self.store is None or self.filter is None:
            raise RuntimeError("bridge is not initialized")
        self.filter.remove(term)
        return self.store.remove_filter_term(term)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def stop(self, timeout: float = 30.0) -> None:
        """Detach listeners, await pending work, release resources."""
        with self._lock:
            if self.state in (BridgeState.SHUTTING_DOWN, BridgeState.STOPPED):
                return
            if self.state is BridgeState.UNINITIALIZED:
                return
            self._set_state(BridgeState.SHUTTING_DOWN)
        self._stop_event.set()

        for listener in self.listeners:
            listener.stop(timeout)
        if self.topics is not None and not self.topics.wait_idle(timeout):
            logger.warning("sub-channel creations still pending after %.0fs", timeout)
        t = self._recovery
        if t is not None and t is not threading.current_thread():
            t.join(timeout)

        self._teardown()
        self._set_state(BridgeState.STOPPED)
        self._stopped.set()

    def _teardown(self) -> None:
        if self.pool is not None:
            self.pool.shutdown(wait=True)
        if self.store is not None:
            try:
                self.store.close()
            except Exception:
                logger.exception("store close failed")
        for name, disconnect in (("source", self.source.disconnect), ("destination", self.destination.disconnect)):
            try:
                disconnect()
            except Exception as e:
                logger.warning("%s disconnect failed: %s", name, e, extra={"platform": name})
        if self._fetcher is not None:
            self._fetcher.close()
        try:
            removed = empty_dir(self.settings.media.resolved_temp_dir())
            if removed:
                logger.info("cleared %d temp entries", removed)
        except OSError as e:
            logger.warning("temp cleanup failed: %s", e)
        if self._chat_lock is not None:
            self._chat_lock.release()
            self._chat_lock = None

    def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)
