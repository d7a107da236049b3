"""Normalisation functions: raw provider payloads → NewsItem.

The functions are **schema-tolerant**: they try multiple field names so
that minor API changes don't silently drop data.

FMP (stable news endpoints):
    symbol, publishedDate, publisher, title, image, site, text, url
    No ``id`` field → the id is ``fmp-`` + the first 12 hex chars of
    MD5(url), so the same article always maps to the same record.

On-demand requests:
    id (optional), title, body|text, source, published_at, tickers, url
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dateutil import parser as dtparser

from .common_types import NewsItem, SourceCredibility, utcnow
from .errors import InvalidNewsItem

logger = logging.getLogger(__name__)


# ── Shared helpers ──────────────────────────────────────────────

# Shortest valid format: "YYYYMMDD".  Shorter strings are ambiguously
# parsed by dateutil (e.g. "5" → the 5th of the current month).
_MIN_DATE_LEN = 8


def _to_datetime(s: Any) -> Optional[datetime]:
    """Parse a date/time value to an aware UTC datetime, or None.

    Naive datetimes are assumed UTC so results don't depend on the
    server timezone.  Numbers are treated as epoch seconds.
    """
    if s is None or s == "":
        return None
    if isinstance(s, datetime):
        dt = s
    elif isinstance(s, (int, float)):
        try:
            return datetime.fromtimestamp(float(s), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning("Epoch value out of range: %r", s)
            return None
    else:
        text = str(s).strip()
        if len(text) < _MIN_DATE_LEN:
            logger.warning("Date string too short (%d chars): %r", len(text), text)
            return None
        try:
            dt = dtparser.parse(text)
        except (ValueError, OverflowError):
            logger.warning("Unparseable date %r", text[:80])
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _extract_tickers(it: Dict[str, Any]) -> List[str]:
    """Generously extract ticker list from various field shapes."""
    sym = it.get("symbol")
    if isinstance(sym, str) and sym.strip():
        return [s.strip().upper() for s in sym.split(",") if s.strip()]

    stocks = it.get("tickers") or it.get("symbols") or it.get("stocks") or []
    if isinstance(stocks, str):
        return [s.strip().upper() for s in stocks.split(",") if s.strip()]
    if isinstance(stocks, (list, tuple, set, frozenset)):
        out: List[str] = []
        for s in stocks:
            if isinstance(s, dict):
                name = s.get("name") or s.get("ticker") or s.get("symbol") or ""
                if name:
                    out.append(str(name).strip().upper())
            elif isinstance(s, str) and s.strip():
                out.append(s.strip().upper())
        return out
    return []


def url_id(prefix: str, url: str) -> str:
    """Stable source-qualified id derived from an article URL."""
    return f"{prefix}-{hashlib.md5(url.encode('utf-8')).hexdigest()[:12]}"


# ── FMP ─────────────────────────────────────────────────────────

def normalize_fmp(it: Dict[str, Any]) -> Optional[NewsItem]:
    """Normalise one raw FMP news item.

    Returns None when the item has no URL (no stable id), no parseable
    publication time, or no text at all.
    """
    url = str(it.get("url") or it.get("link") or "").strip()
    if not url:
        logger.debug("FMP item without url skipped: %r", str(it.get("title"))[:80])
        return None
    published = _to_datetime(it.get("publishedDate") or it.get("published") or it.get("date"))
    if published is None:
        return None
    title = str(it.get("title") or it.get("headline") or "").strip()
    body = str(it.get("text") or it.get("content") or it.get("snippet") or "").strip()
    if not (title or body):
        return None
    source = str(it.get("publisher") or it.get("site") or it.get("source") or "FMP News").strip()
    return NewsItem(
        id=url_id("fmp", url),
        title=title,
        body=body,
        source=source,
        published_at=published,
        tickers=frozenset(_extract_tickers(it)),
        url=url,
    )


# ── On-demand requests ──────────────────────────────────────────

def normalize_request(d: Dict[str, Any]) -> NewsItem:
    """Build a ``NewsItem`` from a caller-supplied dict.

    Raises ``InvalidNewsItem`` when neither title nor body is present or
    the publication time cannot be parsed.  Missing ids are derived from
    the URL, or from the text when there is no URL.
    """
    if not isinstance(d, dict):
        raise InvalidNewsItem(f"expected a mapping, got {type(d).__name__}")
    title = str(d.get("title") or d.get("headline") or "").strip()
    body = str(d.get("body") or d.get("text") or d.get("content") or "").strip()
    if not (title or body):
        raise InvalidNewsItem("news item has neither title nor body")

    raw_published = d.get("published_at") or d.get("publishedDate")
    if raw_published:
        published = _to_datetime(raw_published)
        if published is None:
            raise InvalidNewsItem(f"unparseable published_at: {raw_published!r}")
    else:
        published = utcnow()

    url = str(d.get("url") or "").strip() or None
    item_id = str(d.get("id") or "").strip()
    if not item_id:
        item_id = url_id("url", url) if url else url_id("txt", f"{title}\n{body}")
    return NewsItem(
        id=item_id,
        title=title,
        body=body,
        source=str(d.get("source") or "").strip(),
        published_at=published,
        tickers=frozenset(_extract_tickers(d)),
        url=url,
    )


# ── Source credibility ──────────────────────────────────────────

# name → (tier, reliability 0..10).  Matched case-insensitively by substring.
_SOURCE_TIERS: Dict[str, tuple[int, int]] = {
    "Reuters": (1, 10),
    "Bloomberg": (1, 10),
    "Financial Times": (1, 9),
    "Wall Street Journal": (1, 9),
    "WSJ": (1, 9),
    "CNBC": (1, 8),
    "MarketWatch": (2, 7),
    "Barrons": (2, 8),
    "Seeking Alpha": (2, 6),
    "Yahoo Finance": (2, 6),
    "Investor Business Daily": (2, 7),
    "The Motley Fool": (2, 5),
    "ZeroHedge": (3, 4),
    "InvestorPlace": (3, 4),
    "Tipranks": (3, 5),
}

UNKNOWN_SOURCE = SourceCredibility(tier=3, score=30, label="Unknown")


def source_credibility(source: str) -> SourceCredibility:
    """Look up the credibility tier of a news *source* name."""
    name = (source or "").strip()
    if not name:
        return UNKNOWN_SOURCE
    low = name.lower()
    for key, (tier, reliability) in _SOURCE_TIERS.items():
        if key.lower() in low:
            return SourceCredibility(tier=tier, score=reliability * 10, label=key)
    return UNKNOWN_SOURCE
