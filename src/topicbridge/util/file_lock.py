from __future__ import annotations

import os
from pathlib import Path
from typing import IO, Optional


class LockUnavailableError(RuntimeError):
    """Another process holds the lock."""


class OwnershipLock:
    """Exclusive, non-blocking lock on a file, held until `release()`.

    The bridge takes one per destination chat so two processes never race
    each other creating sub-channels in the same chat. The holder's pid is
    written into the file for operators.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._f: Optional[IO[bytes]] = None

    @property
    def held(self) -> bool:
        return self._f is not None

    def acquire(self) -> "OwnershipLock":
        if self._f is not None:
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)
        f = self.path.open("a+b")
        try:
            _lock(f)
        except OSError as e:
            f.close()
            raise LockUnavailableError(f"{self.path} is held by another process") from e
        f.seek(0)
        f.truncate()
        f.write(str(os.getpid()).encode("ascii"))
        f.flush()
        self._f = f
        return self

    def release(self) -> None:
        f, self._f = self._f, None
        if f is None:
            return
        try:
            _unlock(f)
        except OSError:
            pass
        f.close()

    def __enter__(self) -> "OwnershipLock":
        return self.acquire()

    def __exit__(self, *exc: object) -> None:
        self.release()


if os.name == "nt":
    import msvcrt

    def _lock(f: IO[bytes]) -> None:
        # Region locks need at least one byte to exist.
        f.seek(0, os.SEEK_END)
        if f.tell() == 0:
            f.write(b"\0")
            f.flush()
        f.seek(0)
        msvcrt.locking(f.fileno(), msvcrt.LK_NBLCK, 1)

    def _unlock(f: IO[bytes]) -> None:
        f.seek(0)
        msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _lock(f: IO[bytes]) -> None:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _unlock(f: IO[bytes]) -> None:
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)
