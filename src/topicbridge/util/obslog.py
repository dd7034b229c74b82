from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

# Correlation keys copied from `logger.*(..., extra={...})` into the JSON line.
CORRELATION_KEYS = (
    "thread_id",
    "subchannel_id",
    "participant_id",
    "message_id",
    "platform",
    "state",
)


class JsonlFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, component, thread, msg.

    Correlation keys are included only when set and non-blank.
    """

    def __init__(self, *, component: str = "topicbridge"):
        super().__init__()
        self.component = str(component or "").strip() or "topicbridge"

    def format(self, record: logging.LogRecord) -> str:
        try:
            ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z")
        except (OverflowError, OSError, ValueError):
            ts = ""
        payload: Dict[str, Any] = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "component": self.component,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        for key in CORRELATION_KEYS:
            value = str(getattr(record, key, "") or "").strip()
            if value:
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        try:
            return json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError):
            payload = {k: str(v) for k, v in payload.items()}
            return json.dumps(payload, ensure_ascii=False)


def level_from_name(name: str, default: int = logging.INFO) -> int:
    value = logging.getLevelName(str(name or "").strip().upper())
    return value if isinstance(value, int) else default


def setup_root_json_logging(
    *,
    component: str,
    level: str = "INFO",
    stream: Optional[TextIO] = None,
    force: bool = False,
) -> logging.Handler:
    """Install the JSONL handler on the root logger and return it.

    Repeated calls reuse the existing JSONL handler and only adjust its
    level; `force=True` removes every root handler first.
    """
    root = logging.getLogger()
    lvl = level_from_name(level)
    root.setLevel(lvl)

    if force:
        for h in list(root.handlers):
            root.removeHandler(h)

    for h in root.handlers:
        if isinstance(h.formatter, JsonlFormatter):
            h.setLevel(lvl)
            return h

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(lvl)
    handler.setFormatter(JsonlFormatter(component=component))
    root.addHandler(handler)
    return handler
