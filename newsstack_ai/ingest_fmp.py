"""Synchronous FMP news source.

Polls the FMP stable "latest" news endpoints:
 1. /stable/news/stock-latest
 2. /stable/news/forex-latest
 3. /stable/news/crypto-latest
 4. /stable/news/general-latest

Uses httpx synchronously; the batch orchestrator calls ``fetch_since``
once per run.  Items are de-duplicated by id (the same article can appear
on several endpoints) and returned oldest first.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Callable, Dict, List, Sequence

import httpx

from .common_types import NewsItem
from .normalize import normalize_fmp

logger = logging.getLogger(__name__)

FMP_BASE = "https://financialmodelingprep.com/stable"

DEFAULT_ENDPOINTS = ("stock-latest", "forex-latest", "crypto-latest", "general-latest")

# Regex to strip API keys from URLs before logging.
_APIKEY_RE = re.compile(r"(apikey|token)=[^&]+", re.IGNORECASE)


def _sanitize_url(url: str) -> str:
    """Remove apikey/token query params from a URL for safe logging."""
    return _APIKEY_RE.sub(r"\1=***", url)


def _as_list(x: Any) -> list:
    """Safely coerce *x* to a list of dicts."""
    if not isinstance(x, list):
        if x is not None:
            logger.warning("FMP returned %s instead of list; 0 items ingested.", type(x).__name__)
        return []
    return [item for item in x if isinstance(item, dict)]


def _safe_json(r: httpx.Response) -> Any:
    """Parse JSON response; raise ValueError with sanitized URL on failure."""
    try:
        return r.json()
    except (json.JSONDecodeError, ValueError):
        raise ValueError(
            f"FMP returned non-JSON (content-type={r.headers.get('content-type', '')!r}, "
            f"status={r.status_code}, url={_sanitize_url(str(r.url))})"
        ) from None


class FmpClient:
    """Thin FMP GET helper with retry+backoff, shared by news and market data."""

    _RETRYABLE_CODES = frozenset({429, 500, 502, 503, 504})
    _MAX_RETRIES = 3

    def __init__(
        self,
        api_key: str,
        *,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not api_key:
            raise RuntimeError("FMP_API_KEY missing")
        self.api_key = api_key
        self.client = client or httpx.Client(timeout=10.0)
        self._sleep = sleep

    def get_json(self, path: str, params: Dict[str, Any] | None = None) -> Any:
        """GET ``{FMP_BASE}/{path}`` and return the decoded JSON body."""
        url = f"{FMP_BASE}/{path.lstrip('/')}"
        query = dict(params or {})
        query["apikey"] = self.api_key
        return _safe_json(self._safe_get(url, query))

    def _safe_get(self, url: str, params: dict) -> httpx.Response:
        """GET with retry+backoff for transient failures, sanitized errors."""
        last_exc: Exception | None = None
        for attempt in range(1, self._MAX_RETRIES + 1):
            try:
                r = self.client.get(url, params=params)
                if r.status_code in self._RETRYABLE_CODES and attempt < self._MAX_RETRIES:
                    wait = 2 ** attempt
                    logger.warning(
                        "FMP %d from %s, retry %d/%d in %ds",
                        r.status_code, _sanitize_url(str(r.url)), attempt, self._MAX_RETRIES, wait,
                    )
                    self._sleep(wait)
                    continue
                r.raise_for_status()
                return r
            except httpx.HTTPStatusError as exc:
                raise httpx.HTTPStatusError(
                    message=f"HTTP {exc.response.status_code} from {_sanitize_url(str(exc.request.url))}",
                    request=exc.request,
                    response=exc.response,
                ) from None
            except (httpx.ConnectError, httpx.TimeoutException) as exc:
                last_exc = exc
                if attempt < self._MAX_RETRIES:
                    wait = 2 ** attempt
                    logger.warning(
                        "FMP network error (%s), retry %d/%d in %ds",
                        type(exc).__name__, attempt, self._MAX_RETRIES, wait,
                    )
                    self._sleep(wait)
                    continue
        if last_exc is not None:
            raise last_exc
        raise RuntimeError(f"FMP: all {self._MAX_RETRIES} retries exhausted for {_sanitize_url(url)}")

    def close(self) -> None:
        self.client.close()


class FmpNewsSource:
    """``NewsSource`` over the FMP latest-news endpoints.

    A failing endpoint is logged and skipped so one outage does not
    starve the whole batch.
    """

    def __init__(
        self,
        fmp: FmpClient,
        *,
        endpoints: Sequence[str] = DEFAULT_ENDPOINTS,
        page_size: int = 50,
    ) -> None:
        self.fmp = fmp
        self.endpoints = tuple(endpoints)
        self.page_size = page_size

    def fetch_endpoint(self, endpoint: str, limit: int) -> List[NewsItem]:
        raw = _as_list(self.fmp.get_json(f"news/{endpoint}", {"page": 0, "limit": limit}))
        items = [normalize_fmp(it) for it in raw]
        return [it for it in items if it is not None]

    def fetch_since(self, cursor: float, limit: int) -> List[NewsItem]:
        """Items published strictly after *cursor* (epoch s), oldest first."""
        by_id: Dict[str, NewsItem] = {}
        for endpoint in self.endpoints:
            try:
                items = self.fetch_endpoint(endpoint, self.page_size)
            except (httpx.HTTPError, ValueError, RuntimeError) as exc:
                logger.warning("FMP %s fetch failed: %s", endpoint, _sanitize_url(str(exc)))
                continue
            logger.debug("FMP %s: %d items", endpoint, len(items))
            for it in items:
                if it.published_at.timestamp() > cursor:
                    by_id.setdefault(it.id, it)
        ordered = sorted(by_id.values(), key=lambda it: (it.published_at, it.id))
        return ordered[:limit]

    def close(self) -> None:
        self.fmp.close()
