"""In-memory and file-backed news sources.

``StaticNewsSource`` serves a fixed list (tests, replays);
``JsonlNewsSource`` reads one JSON object per line, normalised with
``normalize_request`` so the file format matches on-demand submissions.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, List

from .common_types import NewsItem
from .errors import InvalidNewsItem
from .normalize import normalize_request

logger = logging.getLogger(__name__)


class StaticNewsSource:
    def __init__(self, items: Iterable[NewsItem]) -> None:
        self.items = sorted(items, key=lambda it: (it.published_at, it.id))

    def fetch_since(self, cursor: float, limit: int) -> List[NewsItem]:
        newer = [it for it in self.items if it.published_at.timestamp() > cursor]
        return newer[:limit]


class JsonlNewsSource(StaticNewsSource):
    def __init__(self, path: str | Path) -> None:
        items: List[NewsItem] = []
        with open(path, encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    items.append(normalize_request(json.loads(line)))
                except (json.JSONDecodeError, InvalidNewsItem) as exc:
                    logger.warning("%s:%d skipped: %s", path, lineno, exc)
        super().__init__(items)
