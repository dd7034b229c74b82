from __future__ import annotations

import threading
from typing import Iterable, List, Optional


def _norm(term: str) -> str:
    return str(term or "").strip().lower()


class ContentFilter:
    """Case-insensitive prefix filter shared by both pipelines."""

    def __init__(self, terms: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._terms: List[str] = []
        self.replace(terms)

    def replace(self, terms: Iterable[str]) -> None:
        cleaned = sorted({_norm(t) for t in terms if _norm(t)})
        with self._lock:
            self._terms = cleaned

    def add(self, term: str) -> None:
        t = _norm(term)
        if not t:
            return
        with self._lock:
            if t not in self._terms:
                self._terms = sorted(self._terms + [t])

    def remove(self, term: str) -> None:
        t = _norm(term)
        with self._lock:
            self._terms = [x for x in self._terms if x != t]

    def terms(self) -> List[str]:
        with self._lock:
            return list(self._terms)

    def match(self, text: str) -> Optional[str]:
        """Return the blocked term `text` starts with, if any."""
        body = _norm(text)
        if not body:
            return None
        with self._lock:
            terms = self._terms
        for term in terms:
            if body.startswith(term):
                return term
        return None
