"""Validation and coercion of model JSON into typed stage results.

Model output is untrusted external input.  The coercers accept the field
spellings models actually produce (camelCase, snake_case, legacy names
such as ``should_build_infrastructure``) and the usual enum synonyms
("cryptocurrency", "NO TRADE", "day_trading", …), and raise
``SchemaError`` for anything they cannot map.  The gateway turns a
``SchemaError`` into a ``ParseError``.
"""

from __future__ import annotations

import math
import re
from typing import Any, Callable, TypeVar

from .common_types import (
    Category,
    DataRequest,
    RiskMode,
    Stage1Result,
    Stage3Result,
    TimeHorizon,
    TradeDecision,
)
from .errors import SchemaError

E = TypeVar("E")

_MAX_TITLE_LEN = 160
_MAX_ASSETS = 12
_MAX_DATA_REQUESTS = 8

_CATEGORY_SYNONYMS: dict[str, Category] = {
    "stock": Category.STOCKS,
    "stocks": Category.STOCKS,
    "equity": Category.STOCKS,
    "equities": Category.STOCKS,
    "forex": Category.FOREX,
    "fx": Category.FOREX,
    "currency": Category.FOREX,
    "currencies": Category.FOREX,
    "crypto": Category.CRYPTO,
    "cryptocurrency": Category.CRYPTO,
    "cryptocurrencies": Category.CRYPTO,
    "commodity": Category.COMMODITIES,
    "commodities": Category.COMMODITIES,
    "index": Category.INDICES,
    "indices": Category.INDICES,
    "indexes": Category.INDICES,
    "macro": Category.MACRO,
    "economy": Category.MACRO,
    "economic": Category.MACRO,
    "earnings": Category.EARNINGS,
}

_DECISION_SYNONYMS: dict[str, TradeDecision] = {
    "BUY": TradeDecision.BUY,
    "LONG": TradeDecision.BUY,
    "STRONG_BUY": TradeDecision.STRONG_BUY,
    "STRONG_LONG": TradeDecision.STRONG_BUY,
    "SELL": TradeDecision.SELL,
    "SHORT": TradeDecision.SELL,
    "STRONG_SELL": TradeDecision.STRONG_SELL,
    "STRONG_SHORT": TradeDecision.STRONG_SELL,
    "NO_TRADE": TradeDecision.NO_TRADE,
    "NONE": TradeDecision.NO_TRADE,
    "HOLD": TradeDecision.NO_TRADE,
    "NEUTRAL": TradeDecision.NO_TRADE,
    "SKIP": TradeDecision.NO_TRADE,
}

_HORIZON_SYNONYMS: dict[str, TimeHorizon] = {
    "intraday": TimeHorizon.INTRADAY,
    "scalping": TimeHorizon.INTRADAY,
    "day_trading": TimeHorizon.INTRADAY,
    "daytrading": TimeHorizon.INTRADAY,
    "short": TimeHorizon.INTRADAY,
    "immediate": TimeHorizon.INTRADAY,
    "minutes": TimeHorizon.INTRADAY,
    "swing": TimeHorizon.SWING,
    "swing_trading": TimeHorizon.SWING,
    "days": TimeHorizon.SWING,
    "position": TimeHorizon.POSITION,
    "position_trading": TimeHorizon.POSITION,
    "macro": TimeHorizon.POSITION,
    "weeks": TimeHorizon.POSITION,
    "long": TimeHorizon.POSITION,
}

_RISK_SYNONYMS: dict[str, RiskMode] = {
    "conservative": RiskMode.CONSERVATIVE,
    "low": RiskMode.CONSERVATIVE,
    "defensive": RiskMode.CONSERVATIVE,
    "risk_off": RiskMode.CONSERVATIVE,
    "elevated": RiskMode.CONSERVATIVE,
    "high_risk": RiskMode.CONSERVATIVE,
    "normal": RiskMode.NORMAL,
    "neutral": RiskMode.NORMAL,
    "moderate": RiskMode.NORMAL,
    "aggressive": RiskMode.AGGRESSIVE,
    "high": RiskMode.AGGRESSIVE,
    "risk_on": RiskMode.AGGRESSIVE,
}

_TRUE_STRINGS = {"true", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "no", "n", "0"}
_KEY_NORM_RE = re.compile(r"[\s\-]+")


# ── Field helpers ───────────────────────────────────────────────

def _pick(d: dict[str, Any], *names: str) -> Any:
    """Return the first present, non-None value among *names*."""
    for name in names:
        if name in d and d[name] is not None:
            return d[name]
    return None


def _norm_key(value: str) -> str:
    return _KEY_NORM_RE.sub("_", value.strip())


def _as_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        low = value.strip().lower()
        if low in _TRUE_STRINGS:
            return True
        if low in _FALSE_STRINGS:
            return False
    raise SchemaError(f"{field}: expected boolean, got {value!r}", field=field)


def _as_str(value: Any, field: str, *, max_len: int | None = None) -> str:
    if value is None:
        return ""
    if not isinstance(value, (str, int, float)):
        raise SchemaError(f"{field}: expected string, got {type(value).__name__}", field=field)
    text = str(value).strip()
    return text[:max_len] if max_len else text


def _as_str_list(value: Any, field: str, *, limit: int) -> tuple[str, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        raise SchemaError(f"{field}: expected list, got {type(value).__name__}", field=field)
    out: list[str] = []
    for v in value:
        if isinstance(v, str) and v.strip():
            out.append(v.strip())
        elif isinstance(v, dict):
            name = _pick(v, "symbol", "asset", "ticker", "name")
            if isinstance(name, str) and name.strip():
                out.append(name.strip())
    return tuple(dict.fromkeys(out))[:limit]


def _as_enum(value: Any, field: str, synonyms: dict[str, E], *, upper: bool = False) -> E:
    if not isinstance(value, str) or not value.strip():
        raise SchemaError(f"{field}: expected non-empty string, got {value!r}", field=field)
    key = _norm_key(value)
    key = key.upper() if upper else key.lower()
    if key in synonyms:
        return synonyms[key]
    raise SchemaError(f"{field}: unrecognised value {value!r}", field=field)


def _as_score(value: Any, field: str) -> int:
    """Clamp a 0..10 score; fractions of 0..1 are not rescaled."""
    if isinstance(value, bool):
        raise SchemaError(f"{field}: expected number, got boolean", field=field)
    if isinstance(value, str):
        try:
            value = float(value.strip().split("/")[0])
        except ValueError:
            raise SchemaError(f"{field}: expected number, got {value!r}", field=field) from None
    if not isinstance(value, (int, float)) or math.isnan(value) or math.isinf(value):
        raise SchemaError(f"{field}: expected number, got {value!r}", field=field)
    return int(min(10, max(0, round(value))))


def _as_data_requests(value: Any) -> tuple[DataRequest, ...]:
    if value is None or value == "":
        return ()
    if not isinstance(value, list):
        raise SchemaError("requiredDataRequests: expected list", field="requiredDataRequests")
    out: list[DataRequest] = []
    for v in value:
        if isinstance(v, str) and v.strip():
            out.append(DataRequest(query=v.strip()))
        elif isinstance(v, dict):
            query = _pick(v, "query", "data", "request", "symbol", "name")
            if isinstance(query, str) and query.strip():
                reason = _pick(v, "reason", "why", "purpose")
                out.append(DataRequest(query=query.strip(), reason=_as_str(reason, "reason")))
    return tuple(out[:_MAX_DATA_REQUESTS])


# ── Stage coercers ──────────────────────────────────────────────

def coerce_stage1(d: dict[str, Any]) -> Stage1Result:
    """Validate screening output into a ``Stage1Result``."""
    raw_deepen = _pick(d, "shouldDeepen", "should_deepen", "should_build_infrastructure")
    if raw_deepen is None:
        raise SchemaError("shouldDeepen missing", field="shouldDeepen")
    should_deepen = _as_bool(raw_deepen, "shouldDeepen")

    title = _as_str(_pick(d, "title", "headline"), "title", max_len=_MAX_TITLE_LEN)
    analysis = _as_str(_pick(d, "analysisText", "analysis_text", "analysis"), "analysisText")

    raw_cat = _pick(d, "category")
    category: Category | None = None
    if should_deepen:
        category = _as_enum(raw_cat, "category", _CATEGORY_SYNONYMS)
    elif isinstance(raw_cat, str) and raw_cat.strip():
        category = _CATEGORY_SYNONYMS.get(_norm_key(raw_cat).lower())

    assets = _as_str_list(
        _pick(d, "affectedAssets", "affected_assets"), "affectedAssets", limit=_MAX_ASSETS,
    )
    requests = _as_data_requests(
        _pick(d, "requiredDataRequests", "required_data_requests", "required_data"),
    )
    return Stage1Result(
        title=title,
        analysis_text=analysis,
        should_deepen=should_deepen,
        category=category,
        affected_assets=assets if should_deepen else (),
        required_data_requests=requests if should_deepen else (),
    )


def coerce_stage3(d: dict[str, Any]) -> Stage3Result:
    """Validate synthesis output into a ``Stage3Result``.

    Only ``tradeDecision`` and ``importanceScore`` are mandatory; the
    other fields default conservatively.  The NO_TRADE → ``would_trade``
    normalisation is *not* applied here; see ``pipeline.normalize_decision``.
    """
    decision = _as_enum(
        _pick(d, "tradeDecision", "trade_decision", "signal", "decision"),
        "tradeDecision", _DECISION_SYNONYMS, upper=True,
    )
    raw_score = _pick(d, "importanceScore", "importance_score", "importance")
    if raw_score is None:
        raise SchemaError("importanceScore missing", field="importanceScore")
    score = _as_score(raw_score, "importanceScore")

    raw_blocked = _pick(d, "signalBlocked", "signal_blocked")
    blocked = _as_bool(raw_blocked, "signalBlocked") if raw_blocked is not None else False
    reason = _as_str(_pick(d, "blockReason", "block_reason"), "blockReason") or None

    raw_would = _pick(d, "wouldTrade", "would_trade")
    would_trade = (
        _as_bool(raw_would, "wouldTrade")
        if raw_would is not None
        else decision is not TradeDecision.NO_TRADE
    )

    raw_horizon = _pick(d, "timeHorizon", "time_horizon", "trade_type")
    horizon = (
        _as_enum(raw_horizon, "timeHorizon", _HORIZON_SYNONYMS)
        if raw_horizon is not None else TimeHorizon.SWING
    )
    raw_risk = _pick(d, "riskMode", "risk_mode")
    risk = (
        _as_enum(raw_risk, "riskMode", _RISK_SYNONYMS)
        if raw_risk is not None else RiskMode.NORMAL
    )

    primary = _as_str(_pick(d, "primaryAsset", "primary_asset", "asset"), "primaryAsset") or None
    rationale = _as_str(
        _pick(d, "rationale", "overall_assessment", "reasoning"), "rationale",
    )
    return Stage3Result(
        trade_decision=decision,
        importance_score=score,
        signal_blocked=blocked,
        block_reason=reason,
        would_trade=would_trade,
        time_horizon=horizon,
        risk_mode=risk,
        primary_asset=primary,
        rationale=rationale,
    )


Coercer = Callable[[dict[str, Any]], Any]
