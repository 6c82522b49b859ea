# src/iris/runtime/structured_logging.py
from __future__ import annotations

"""JSONL logging for gateway nodes.

Two entry styles end up as one JSON object per line:

  log_event(log, "ingest_failed", cid=..., code=...)
      the message itself is the JSON event {"ts_ms", "event", **fields}

  log.error("fail-fast tripped ...") / log.exception(...)
      JsonLineFormatter wraps the plain message as {"ts_ms", "level",
      "logger", "msg"} and adds "exc" when a traceback is attached
"""

import json
import logging
import os
import sys
import time
from typing import Any, Dict, Optional, TextIO

Json = Dict[str, Any]

_MARK = "_iris_structured"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _dumps(obj: Json) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if getattr(record, "iris_event", False) and not record.exc_info:
            return msg
        out: Json = {
            "ts_ms": int(record.created * 1000),
            "level": record.levelname,
            "logger": record.name,
            "msg": msg,
        }
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        return _dumps(out)


def configure_structured_logging(level: Optional[str] = None, *, stream: Optional[TextIO] = None) -> None:
    """Install one JSONL handler on the root logger.

    Level comes from `level`, else IRIS_LOG_LEVEL, else INFO. Calling again only
    adjusts the level.
    """
    level_name = (level or os.environ.get("IRIS_LOG_LEVEL") or "INFO").strip().upper()
    lvl = getattr(logging, level_name, logging.INFO)
    if not isinstance(lvl, int):
        lvl = logging.INFO

    root = logging.getLogger()
    root.setLevel(lvl)
    for h in root.handlers:
        if getattr(h, _MARK, False):
            h.setLevel(lvl)
            return

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(lvl)
    handler.setFormatter(JsonLineFormatter())
    setattr(handler, _MARK, True)
    root.handlers = [handler]


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit a single JSONL event. Non-JSON field values are rendered with str()."""
    if not logger.isEnabledFor(level):
        return
    payload: Json = {"ts_ms": _now_ms(), "event": str(event)}
    payload.update(fields)
    logger.log(level, _dumps(payload), extra={"iris_event": True})
