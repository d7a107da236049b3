"""Market-data providers: price snapshot for a symbol at/after a timestamp.

Both providers return the first bar at or after the publication time
together with the move from that bar to the most recent one
(``change_pct``), i.e. the market reaction since the news broke.

``None`` means "no data for this symbol"; transport or provider failures
raise ``MarketDataMiss``.  Enrichment tolerates both.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Tuple
from zoneinfo import ZoneInfo

import httpx

from .common_types import PriceSnapshot
from .errors import MarketDataMiss
from .ingest_fmp import FmpClient, _sanitize_url
from .normalize import _to_datetime

logger = logging.getLogger(__name__)

# FMP intraday bars are stamped in exchange-local time without an offset.
_NY = ZoneInfo("America/New_York")


def _dec(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def _change_pct(start: Decimal, end: Decimal) -> Optional[Decimal]:
    if start == 0:
        return None
    return ((end - start) / start * 100).quantize(Decimal("0.01"))


def reaction_from_bars(
    symbol: str,
    bars: Iterable[Tuple[datetime, Decimal]],
    at_or_after: datetime,
    source: str,
) -> Optional[PriceSnapshot]:
    """Pick the first bar at/after *at_or_after* and the move to the last bar."""
    ordered = sorted((ts, px) for ts, px in bars if px is not None)
    after = [(ts, px) for ts, px in ordered if ts >= at_or_after]
    if not after:
        return None
    first_ts, first_px = after[0]
    last_px = after[-1][1]
    return PriceSnapshot(
        symbol=symbol,
        price=first_px,
        as_of=first_ts,
        source=source,
        change_pct=_change_pct(first_px, last_px) if len(after) > 1 else None,
    )


class FmpMarketData:
    """FMP 1-minute intraday bars, falling back to the live quote."""

    def __init__(self, fmp: FmpClient) -> None:
        self.fmp = fmp

    def _bars(self, symbol: str, day: datetime) -> list[Tuple[datetime, Decimal]]:
        local_day = day.astimezone(_NY).date()
        data = self.fmp.get_json(
            "historical-chart/1min",
            {"symbol": symbol, "from": local_day.isoformat(), "to": local_day.isoformat()},
        )
        out: list[Tuple[datetime, Decimal]] = []
        if not isinstance(data, list):
            return out
        for bar in data:
            if not isinstance(bar, dict):
                continue
            try:
                ts = datetime.fromisoformat(str(bar.get("date"))).replace(tzinfo=_NY)
            except ValueError:
                continue
            px = _dec(bar.get("close"))
            if px is not None:
                out.append((ts.astimezone(timezone.utc), px))
        return out

    def _quote(self, symbol: str) -> Optional[PriceSnapshot]:
        data = self.fmp.get_json("quote", {"symbol": symbol})
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            return None
        q = data[0]
        px = _dec(q.get("price"))
        if px is None:
            return None
        as_of = _to_datetime(q.get("timestamp")) or datetime.now(timezone.utc)
        return PriceSnapshot(
            symbol=symbol,
            price=px,
            as_of=as_of,
            source="fmp:quote",
            change_pct=_dec(q.get("changePercentage") or q.get("changesPercentage")),
        )

    def get_snapshot(self, symbol: str, at_or_after: datetime) -> Optional[PriceSnapshot]:
        sym = symbol.strip().upper()
        if not sym:
            return None
        try:
            snap = reaction_from_bars(sym, self._bars(sym, at_or_after), at_or_after, "fmp:1min")
            if snap is None:
                logger.debug("No FMP 1min bars for %s after %s, using quote", sym, at_or_after)
                snap = self._quote(sym)
        except (httpx.HTTPError, ValueError, RuntimeError) as exc:
            raise MarketDataMiss(
                f"FMP lookup failed for {sym}: {_sanitize_url(str(exc))}", symbol=sym,
            ) from None
        return snap


class YFinanceMarketData:
    """Yahoo Finance bars via ``yfinance``.

    1-minute history only reaches back about a week; older timestamps fall
    back to hourly and then daily bars.
    """

    _INTERVALS = (("1m", timedelta(days=7)), ("1h", timedelta(days=700)), ("1d", None))

    def __init__(self, *, window: timedelta = timedelta(days=2)) -> None:
        self.window = window

    def _history(self, symbol: str, start: datetime, interval: str):
        import yfinance as yf

        return yf.Ticker(symbol).history(
            start=start, end=start + self.window, interval=interval, auto_adjust=False,
        )

    def get_snapshot(self, symbol: str, at_or_after: datetime) -> Optional[PriceSnapshot]:
        sym = symbol.strip().upper()
        if not sym:
            return None
        age = datetime.now(timezone.utc) - at_or_after
        interval = next(iv for iv, max_age in self._INTERVALS if max_age is None or age < max_age)
        try:
            df = self._history(sym, at_or_after, interval)
        except Exception as exc:  # yfinance raises a wide range of errors
            raise MarketDataMiss(f"yfinance lookup failed for {sym}: {exc}", symbol=sym) from None
        if df is None or getattr(df, "empty", True):
            return None
        bars = []
        for ts, row in df.iterrows():
            py_ts = ts.to_pydatetime()
            if py_ts.tzinfo is None:
                py_ts = py_ts.replace(tzinfo=timezone.utc)
            bars.append((py_ts, _dec(row.get("Close"))))
        # Daily bars are stamped at midnight; treat the publication day's bar as a hit.
        cutoff = at_or_after
        if interval == "1d":
            cutoff = at_or_after.replace(hour=0, minute=0, second=0, microsecond=0)
        return reaction_from_bars(sym, bars, cutoff, f"yfinance:{interval}")
