"""SignalProduced events and their file sinks.

The pipeline publishes one ``SignalProduced`` per newly stored, completed
analysis.  Consumers (UI, notifications) subscribe to the ``SignalBus``;
the bundled sinks append events to a JSONL file and write an atomic JSON
snapshot for readers that poll a file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List

from .common_types import AnalysisRecord, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignalProduced:
    record: AnalysisRecord
    emitted_at: datetime = field(default_factory=utcnow)

    @property
    def news_id(self) -> str:
        return self.record.news_id

    def to_dict(self) -> Dict[str, Any]:
        s3 = self.record.stage3
        return {
            "event": "SignalProduced",
            "news_id": self.news_id,
            "emitted_at": self.emitted_at.isoformat(),
            "actionable": self.record.is_actionable,
            "breaking": self.record.is_breaking,
            "title": (self.record.stage1.title if self.record.stage1 else "") or self.record.news.title,
            "decision": s3.to_dict() if s3 else None,
            "total_cost": str(self.record.costs.total),
        }


Listener = Callable[[SignalProduced], None]


class SignalBus:
    """Synchronous fan-out.  A failing listener never affects the others."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def emit(self, event: SignalProduced) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.error("Signal listener %r failed for %s", listener, event.news_id, exc_info=True)


class JsonlSignalSink:
    """Append each event as one JSON line to *path*."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    def __call__(self, event: SignalProduced) -> None:
        line = json.dumps(event.to_dict(), ensure_ascii=False, default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")


def export_snapshot(
    path: str,
    records: Iterable[AnalysisRecord],
    meta: Dict[str, Any],
) -> None:
    """Atomically write *records* + *meta* to *path*.

    Uses a tempfile → rename so readers never see a partially-written file.
    """
    dest_dir = os.path.dirname(path) or "."
    os.makedirs(dest_dir, exist_ok=True)
    payload = {"meta": meta, "signals": [r.to_dict() for r in records]}
    fd, tmp = tempfile.mkstemp(dir=dest_dir, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2, default=str, allow_nan=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
