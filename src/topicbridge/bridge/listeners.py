"""
The two consumers: one drains the source service, one drains the
destination chat. Each runs on its own thread. Pipeline failures are
handled inside the pipelines; only polling errors and transient delivery
failures reach the loop, which backs off and tries again.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from ..contracts.v1 import RawMessage
from ..errors import AuthExpiredError, TransientNetworkError
from ..kernel.dedup import DedupWindow
from ..ports.destination import DestinationChatClient
from ..ports.source import SourceMessagingClient, normalize_message
from ..util.time import epoch_seconds
from .forward import ForwardPipeline
from .reverse import ReversePipeline

logger = logging.getLogger("topicbridge.listeners")

AuthErrorCallback = Callable[[str, Exception], None]


class Backoff:
    """Exponential backoff; a server-supplied retry hint wins when larger."""

    def __init__(self, initial: float = 1.0, maximum: float = 60.0, factor: float = 2.0):
        self.initial = float(initial)
        self.maximum = float(maximum)
        self.factor = float(factor)
        self.attempts = 0

    def next_delay(self, hint: Optional[float] = None) -> float:
        delay = min(self.maximum, self.initial * (self.factor ** self.attempts))
        self.attempts += 1
        if hint is not None and hint > delay:
            delay = min(float(hint), self.maximum)
        return delay

    def reset(self) -> None:
        self.attempts = 0


class PollingListener:
    name = "listener"

    def __init__(
        self,
        *,
        interval: float,
        backoff: Backoff,
        on_auth_error: AuthErrorCallback,
        paused: Callable[[], bool] = lambda: False,
    ):
        self.interval = max(0.0, float(interval))
        self.backoff = backoff
        self.on_auth_error = on_auth_error
        self.paused = paused
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        raise NotImplementedError

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"topicbridge-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Request stop and wait for the current iteration to finish."""
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        logger.info("%s listener started", self.name, extra={"platform": self.name})
        while not self._stop.is_set():
            if self.paused():
                self._stop.wait(max(self.interval, 0.1))
                continue
            try:
                self.run_once()
            except AuthExpiredError as e:
                logger.warning("%s auth error: %s", self.name, e, extra={"platform": self.name})
                self.on_auth_error(self.name, e)
                self._stop.wait(self.backoff.initial)
                continue
            except TransientNetworkError as e:
                delay = self.backoff.next_delay(e.retry_after)
                logger.warning("%s poll failed (%s); retry in %.1fs", self.name, e, delay, extra={"platform": self.name})
                self._stop.wait(delay)
                continue
            except Exception:
                delay = self.backoff.next_delay()
                logger.exception("%s poll crashed; retry in %.1fs", self.name, delay, extra={"platform": self.name})
                self._stop.wait(delay)
                continue
            self.backoff.reset()
            self._stop.wait(self.interval)
        logger.info("%s listener stopped", self.name, extra={"platform": self.name})


class SourceListener(PollingListener):
    """Sole owner (and writer) of the dedup window.

    A message is committed to the window only once the pipeline is done
    with it. When delivery fails transiently the rest of the batch is held
    uncommitted and offered again, ahead of newer messages, on the next
    poll.
    """

    name = "source"

    def __init__(
        self,
        source: SourceMessagingClient,
        dedup: DedupWindow,
        forward: ForwardPipeline,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.source = source
        self.dedup = dedup
        self.forward = forward
        self._held: List[RawMessage] = []

    @property
    def held_count(self) -> int:
        return len(self._held)

    def run_once(self) -> int:
        batch = self._held + list(self.source.list_new_messages())
        self._held = []
        forwarded = 0
        # Oldest first so the high-watermark does not skip later items of the batch.
        ordered = sorted(batch, key=lambda r: epoch_seconds(r.timestamp))
        for i, raw in enumerate(ordered):
            if self._stop.is_set():
                self._held = ordered[i:]
                break
            msg = normalize_message(raw)
            if not self.dedup.is_new(msg.id, msg.timestamp):
                logger.debug("duplicate or old message skipped", extra={"thread_id": msg.thread_id, "message_id": msg.id})
                continue
            try:
                delivered = self.forward.forward(msg)
            except TransientNetworkError:
                self._held = ordered[i:]
                logger.info(
                    "holding %d message(s) for retry",
                    len(self._held),
                    extra={"thread_id": msg.thread_id, "message_id": msg.id},
                )
                raise
            self.dedup.commit(msg.id, msg.timestamp)
            if delivered:
                forwarded += 1
        return forwarded


class DestinationListener(PollingListener):
    name = "destination"

    def __init__(self, destination: DestinationChatClient, reverse: ReversePipeline, **kwargs):
        super().__init__(**kwargs)
        self.destination = destination
        self.reverse = reverse

    def run_once(self) -> int:
        events = self.destination.poll()
        for event in events:
            self.reverse.handle(event)
        return len(events)
