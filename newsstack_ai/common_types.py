"""Unified internal schema shared by every stage of the analysis pipeline.

Every news adapter (FMP, JSON files, on-demand requests) normalises its raw
payload into a ``NewsItem`` before entering the pipeline.  Each analysed
item produces exactly one ``AnalysisRecord`` keyed by ``NewsItem.id``.

All records round-trip through ``to_dict()`` / ``from_dict()`` so the
SQLite store can persist them as JSON.  Monetary values are ``Decimal``
and serialise as strings to avoid float drift.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ── Enumerations ────────────────────────────────────────────────


class Category(str, enum.Enum):
    STOCKS = "stocks"
    FOREX = "forex"
    CRYPTO = "crypto"
    COMMODITIES = "commodities"
    INDICES = "indices"
    MACRO = "macro"
    EARNINGS = "earnings"


class TradeDecision(str, enum.Enum):
    BUY = "BUY"
    STRONG_BUY = "STRONG_BUY"
    SELL = "SELL"
    STRONG_SELL = "STRONG_SELL"
    NO_TRADE = "NO_TRADE"


class TimeHorizon(str, enum.Enum):
    INTRADAY = "intraday"
    SWING = "swing"
    POSITION = "position"


class RiskMode(str, enum.Enum):
    CONSERVATIVE = "conservative"
    NORMAL = "normal"
    AGGRESSIVE = "aggressive"


class AnalysisStatus(str, enum.Enum):
    """Terminal classification of one analysed item."""

    REJECTED = "Rejected"
    ERROR = "Error"
    COMPLETED = "Completed"


class ModelRole(str, enum.Enum):
    SCREENING = "screening"
    RESEARCH = "research"
    SYNTHESIS = "synthesis"


class PipelineState(str, enum.Enum):
    INGESTED = "Ingested"
    SCREENING = "Screening"
    ENRICHING = "Enriching"
    DECIDING = "Deciding"
    REJECTED = "Rejected"
    COMPLETED = "Completed"
    ERROR = "Error"


# ── Input ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class NewsItem:
    """Provider-agnostic, immutable news record."""

    id: str  # source-qualified stable identifier, e.g. "fmp-3f2a9c0d1b7e"
    title: str
    body: str
    source: str
    published_at: datetime
    tickers: frozenset[str] = frozenset()
    url: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("id must be non-empty")
        if self.published_at.tzinfo is None:
            raise ValueError("published_at must be timezone-aware")
        object.__setattr__(
            self,
            "tickers",
            frozenset(t.strip().upper() for t in self.tickers if t and t.strip()),
        )

    @property
    def content(self) -> str:
        """Article text sent to the models; falls back to the title."""
        return self.body.strip() or self.title.strip()

    @property
    def is_valid(self) -> bool:
        """Minimal sanity check before the pipeline accepts the item."""
        return bool(self.id and (self.title.strip() or self.body.strip()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "source": self.source,
            "published_at": self.published_at.isoformat(),
            "tickers": sorted(self.tickers),
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> NewsItem:
        return cls(
            id=str(d["id"]),
            title=str(d.get("title") or ""),
            body=str(d.get("body") or ""),
            source=str(d.get("source") or ""),
            published_at=_parse_dt(d["published_at"]),
            tickers=frozenset(d.get("tickers") or ()),
            url=d.get("url"),
        )


@dataclass(frozen=True)
class SourceCredibility:
    tier: int  # 1 = elite … 4 = unknown/low
    score: int  # 0..100
    label: str

    def to_dict(self) -> dict[str, Any]:
        return {"tier": self.tier, "score": self.score, "label": self.label}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SourceCredibility:
        return cls(tier=int(d["tier"]), score=int(d["score"]), label=str(d["label"]))


# ── Stage outputs ───────────────────────────────────────────────


@dataclass(frozen=True)
class DataRequest:
    """One piece of data the screening model asked for."""

    query: str
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"query": self.query, "reason": self.reason}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DataRequest:
        return cls(query=str(d["query"]), reason=str(d.get("reason") or ""))


@dataclass(frozen=True)
class PriceSnapshot:
    symbol: str
    price: Decimal
    as_of: datetime
    source: str
    change_pct: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": str(self.price),
            "as_of": self.as_of.isoformat(),
            "source": self.source,
            "change_pct": str(self.change_pct) if self.change_pct is not None else None,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> PriceSnapshot:
        change = d.get("change_pct")
        return cls(
            symbol=str(d["symbol"]),
            price=Decimal(str(d["price"])),
            as_of=_parse_dt(d["as_of"]),
            source=str(d.get("source") or ""),
            change_pct=Decimal(str(change)) if change is not None else None,
        )


@dataclass(frozen=True)
class Stage1Result:
    """Screening output.  ``category`` is None for rejected items."""

    title: str
    analysis_text: str
    should_deepen: bool
    category: Category | None
    affected_assets: tuple[str, ...] = ()
    required_data_requests: tuple[DataRequest, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "analysis_text": self.analysis_text,
            "should_deepen": self.should_deepen,
            "category": self.category.value if self.category else None,
            "affected_assets": list(self.affected_assets),
            "required_data_requests": [r.to_dict() for r in self.required_data_requests],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Stage1Result:
        cat = d.get("category")
        return cls(
            title=str(d.get("title") or ""),
            analysis_text=str(d.get("analysis_text") or ""),
            should_deepen=bool(d["should_deepen"]),
            category=Category(cat) if cat else None,
            affected_assets=tuple(d.get("affected_assets") or ()),
            required_data_requests=tuple(
                DataRequest.from_dict(r) for r in d.get("required_data_requests") or ()
            ),
        )


@dataclass(frozen=True)
class Stage2Result:
    """Enrichment output: market reaction snapshots + research narrative."""

    market_reaction: tuple[PriceSnapshot, ...]
    external_impact: str
    raw_research_text: str
    missing_symbols: tuple[str, ...] = ()
    citations: tuple[str, ...] = ()
    research_available: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_reaction": [s.to_dict() for s in self.market_reaction],
            "external_impact": self.external_impact,
            "raw_research_text": self.raw_research_text,
            "missing_symbols": list(self.missing_symbols),
            "citations": list(self.citations),
            "research_available": self.research_available,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Stage2Result:
        return cls(
            market_reaction=tuple(PriceSnapshot.from_dict(s) for s in d.get("market_reaction") or ()),
            external_impact=str(d.get("external_impact") or ""),
            raw_research_text=str(d.get("raw_research_text") or ""),
            missing_symbols=tuple(d.get("missing_symbols") or ()),
            citations=tuple(d.get("citations") or ()),
            research_available=bool(d.get("research_available", True)),
        )


@dataclass(frozen=True)
class Stage3Result:
    """Synthesis output: the trade decision and its metadata."""

    trade_decision: TradeDecision
    importance_score: int
    signal_blocked: bool
    block_reason: str | None
    would_trade: bool
    time_horizon: TimeHorizon
    risk_mode: RiskMode
    primary_asset: str | None = None
    rationale: str = ""

    def __post_init__(self) -> None:
        if not (0 <= self.importance_score <= 10):
            raise ValueError(f"importance_score must be in [0, 10], got {self.importance_score}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "trade_decision": self.trade_decision.value,
            "importance_score": self.importance_score,
            "signal_blocked": self.signal_blocked,
            "block_reason": self.block_reason,
            "would_trade": self.would_trade,
            "time_horizon": self.time_horizon.value,
            "risk_mode": self.risk_mode.value,
            "primary_asset": self.primary_asset,
            "rationale": self.rationale,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Stage3Result:
        return cls(
            trade_decision=TradeDecision(d["trade_decision"]),
            importance_score=int(d["importance_score"]),
            signal_blocked=bool(d["signal_blocked"]),
            block_reason=d.get("block_reason"),
            would_trade=bool(d["would_trade"]),
            time_horizon=TimeHorizon(d["time_horizon"]),
            risk_mode=RiskMode(d["risk_mode"]),
            primary_asset=d.get("primary_asset"),
            rationale=str(d.get("rationale") or ""),
        )


# ── Costs ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
        )


ZERO_USAGE = Usage()


@dataclass(frozen=True)
class CostLine:
    input_tokens: int = 0
    output_tokens: int = 0
    request_count: int = 0
    cost: Decimal = Decimal("0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "request_count": self.request_count,
            "cost": str(self.cost),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> CostLine:
        return cls(
            input_tokens=int(d.get("input_tokens", 0)),
            output_tokens=int(d.get("output_tokens", 0)),
            request_count=int(d.get("request_count", 0)),
            cost=Decimal(str(d.get("cost", "0"))),
        )


@dataclass(frozen=True)
class Costs:
    """Per-role cost lines.  Built only by ``costs.CostLedger``."""

    screening: CostLine
    research: CostLine
    synthesis: CostLine
    total: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "screening": self.screening.to_dict(),
            "research": self.research.to_dict(),
            "synthesis": self.synthesis.to_dict(),
            "total": str(self.total),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Costs:
        return cls(
            screening=CostLine.from_dict(d.get("screening") or {}),
            research=CostLine.from_dict(d.get("research") or {}),
            synthesis=CostLine.from_dict(d.get("synthesis") or {}),
            total=Decimal(str(d.get("total", "0"))),
        )


# ── The unit of work / persistence ──────────────────────────────


@dataclass
class AnalysisRecord:
    """One analysed news item.  Unique per ``news_id``."""

    news_id: str
    news: NewsItem
    status: AnalysisStatus
    costs: Costs
    stage1: Stage1Result | None = None
    stage2: Stage2Result | None = None
    stage3: Stage3Result | None = None
    error: str | None = None
    timing: dict[str, float] = field(default_factory=dict)
    source_credibility: SourceCredibility | None = None
    is_breaking: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_actionable(self) -> bool:
        """True when downstream consumers may act on the signal."""
        s3 = self.stage3
        return (
            self.status is AnalysisStatus.COMPLETED
            and s3 is not None
            and not s3.signal_blocked
            and s3.would_trade
            and s3.trade_decision is not TradeDecision.NO_TRADE
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "news_id": self.news_id,
            "news": self.news.to_dict(),
            "status": self.status.value,
            "costs": self.costs.to_dict(),
            "stage1": self.stage1.to_dict() if self.stage1 else None,
            "stage2": self.stage2.to_dict() if self.stage2 else None,
            "stage3": self.stage3.to_dict() if self.stage3 else None,
            "error": self.error,
            "timing": dict(self.timing),
            "source_credibility": (
                self.source_credibility.to_dict() if self.source_credibility else None
            ),
            "is_breaking": self.is_breaking,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> AnalysisRecord:
        cred = d.get("source_credibility")
        return cls(
            news_id=str(d["news_id"]),
            news=NewsItem.from_dict(d["news"]),
            status=AnalysisStatus(d["status"]),
            costs=Costs.from_dict(d["costs"]),
            stage1=Stage1Result.from_dict(d["stage1"]) if d.get("stage1") else None,
            stage2=Stage2Result.from_dict(d["stage2"]) if d.get("stage2") else None,
            stage3=Stage3Result.from_dict(d["stage3"]) if d.get("stage3") else None,
            error=d.get("error"),
            timing={k: float(v) for k, v in (d.get("timing") or {}).items()},
            source_credibility=SourceCredibility.from_dict(cred) if cred else None,
            is_breaking=bool(d.get("is_breaking", False)),
            created_at=_parse_dt(d["created_at"]),
            updated_at=_parse_dt(d["updated_at"]),
        )


# ── Collaborator interfaces ─────────────────────────────────────


class NewsSource(Protocol):
    """Anything that yields news published after a cursor (epoch seconds)."""

    def fetch_since(self, cursor: float, limit: int) -> list[NewsItem]: ...


class MarketDataProvider(Protocol):
    """Price lookups.  ``None`` means no data; transport failure raises."""

    def get_snapshot(self, symbol: str, at_or_after: datetime) -> PriceSnapshot | None: ...
