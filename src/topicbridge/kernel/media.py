"""Media conversion and retrieval.

Voice notes from the destination are transcoded to `VOICE_PROFILE` before
they go to the source service; photos, videos and documents pass through.
Every transcode runs in its own temporary directory, which is removed on
success, on failure and on interruption alike. Conversions run on a
bounded worker pool, never on a listener thread.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, Set, Tuple

import requests

from ..contracts.v1 import MessageType
from ..errors import ConversionError, UnsupportedContentError

logger = logging.getLogger("topicbridge.media")


@dataclass(frozen=True)
class AudioProfile:
    codec: str
    container: str
    extension: str
    channels: int
    sample_rate: int
    bitrate: str
    mime_type: str


# AAC in an MP4 (.m4a) container, mono, 44.1 kHz: what DM voice notes accept.
VOICE_PROFILE = AudioProfile(
    codec="aac",
    container="mp4",
    extension=".m4a",
    channels=1,
    sample_rate=44100,
    bitrate="128k",
    mime_type="audio/mp4",
)


class Transcoder(ABC):
    @abstractmethod
    def convert(self, input_path: Path, output_path: Path, profile: AudioProfile) -> None:
        """Write `output_path` or raise ConversionError."""
        pass


class FfmpegTranscoder(Transcoder):
    def __init__(self, ffmpeg_path: str = "ffmpeg", *, timeout_seconds: float = 120.0):
        self.ffmpeg_path = ffmpeg_path or "ffmpeg"
        self.timeout_seconds = float(timeout_seconds)

    def available(self) -> bool:
        return shutil.which(self.ffmpeg_path) is not None

    def build_command(self, input_path: Path, output_path: Path, profile: AudioProfile) -> List[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-nostdin",
            "-i",
            str(input_path),
            "-vn",
            "-ac",
            str(profile.channels),
            "-ar",
            str(profile.sample_rate),
            "-c:a",
            profile.codec,
            "-b:a",
            profile.bitrate,
            "-f",
            profile.container,
            str(output_path),
        ]

    def convert(self, input_path: Path, output_path: Path, profile: AudioProfile) -> None:
        if not self.available():
            raise ConversionError(f"transcoder not found: {self.ffmpeg_path}")
        cmd = self.build_command(input_path, output_path, profile)
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ConversionError(f"ffmpeg timed out after {self.timeout_seconds:.0f}s") from e
        except OSError as e:
            raise ConversionError(f"ffmpeg could not start: {e}") from e

        if proc.returncode != 0:
            tail = (proc.stderr or b"").decode("utf-8", "replace").strip().splitlines()[-1:]
            raise ConversionError(f"ffmpeg exited {proc.returncode}: {tail[0] if tail else ''}")
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise ConversionError("ffmpeg produced no output")


class MediaConverter:
    def __init__(self, transcoder: Transcoder, temp_root: Optional[Path] = None):
        self.transcoder = transcoder
        self.temp_root = temp_root

    def _workdir(self) -> tempfile.TemporaryDirectory:
        root: Optional[str] = None
        if self.temp_root is not None:
            self.temp_root.mkdir(parents=True, exist_ok=True)
            root = str(self.temp_root)
        return tempfile.TemporaryDirectory(prefix="convert_", dir=root)

    def convert_audio(
        self,
        data: bytes,
        profile: AudioProfile = VOICE_PROFILE,
        *,
        input_suffix: str = ".ogg",
    ) -> bytes:
        if not data:
            raise ConversionError("empty audio input")
        with self._workdir() as work:
            src = Path(work) / f"input{input_suffix or '.bin'}"
            dst = Path(work) / f"output{profile.extension}"
            try:
                src.write_bytes(data)
                self.transcoder.convert(src, dst, profile)
                return dst.read_bytes()
            except OSError as e:
                raise ConversionError(f"conversion i/o failed: {e}") from e

    def prepare(self, kind: MessageType, data: bytes, filename: str = "") -> Tuple[bytes, str]:
        """Return (bytes, filename) ready for the source service."""
        if kind is MessageType.VOICE:
            suffix = Path(filename).suffix if filename else ".ogg"
            out = self.convert_audio(data, VOICE_PROFILE, input_suffix=suffix)
            stem = Path(filename).stem if filename else "voice"
            return out, f"{stem}{VOICE_PROFILE.extension}"
        return data, filename


class MediaWorkerPool:
    """Bounded pool for conversions and uploads that must not block dispatch."""

    def __init__(self, max_workers: int = 2):
        self.max_workers = max(1, int(max_workers))
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="media")
        self._lock = threading.Lock()
        self._pending: Set[Future] = set()
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        with self._lock:
            if self._closed:
                raise RuntimeError("media pool is shut down")
            fut = self._executor.submit(fn, *args, **kwargs)
            self._pending.add(fut)
        fut.add_done_callback(self._done)
        return fut

    def _done(self, fut: Future) -> None:
        with self._lock:
            self._pending.discard(fut)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def shutdown(self, *, wait: bool = True, cancel_pending: bool = False) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=cancel_pending)


class MediaFetcher:
    """Downloads source media referenced by URL."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        max_bytes: int = 50 * 1024 * 1024,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.session = session or requests.Session()

    def fetch(self, url: str) -> bytes:
        try:
            with self.session.get(url, timeout=self.timeout, stream=True) as r:
                r.raise_for_status()
                chunks: List[bytes] = []
                size = 0
                for chunk in r.iter_content(chunk_size=64 * 1024):
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise UnsupportedContentError(f"media larger than {self.max_bytes} bytes")
                    chunks.append(chunk)
            return b"".join(chunks)
        except requests.RequestException as e:
            raise UnsupportedContentError(f"media fetch failed: {e}") from e

    def close(self) -> None:
        self.session.close()
