"""Stage pipeline: Screen → (Enrich) → Decide for one news item.

State machine::

    Ingested → Screening → Rejected
                         → Enriching → Deciding → Completed
    (any in-flight state) → Error

``process()`` is the unit of work used by both the batch orchestrator and
the on-demand gateway: claim the id, run the stages, persist the record,
publish ``SignalProduced``.  Model failures never raise out of here: they
end the item as an ``Error`` record that still carries every billed cost.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Mapping, Optional, Tuple

from .common_types import (
    AnalysisRecord,
    AnalysisStatus,
    MarketDataProvider,
    ModelRole,
    NewsItem,
    PipelineState,
    PriceSnapshot,
    RiskMode,
    SourceCredibility,
    Stage1Result,
    Stage2Result,
    Stage3Result,
    TimeHorizon,
    TradeDecision,
    utcnow,
)
from .costs import CostLedger, PriceTable
from .errors import DuplicateClaim, InvalidNewsItem, MarketDataMiss, ModelServerError
from .events import SignalBus, SignalProduced
from .model_gateway import ModelGateway, ModelResult, _sanitize_exc
from .normalize import source_credibility
from .prompts import (
    RESEARCH_SYSTEM,
    SCREENING_SYSTEM,
    SYNTHESIS_SYSTEM,
    build_research_prompt,
    build_screening_prompt,
    build_synthesis_prompt,
)
from .schemas import coerce_stage1, coerce_stage3
from .store_sqlite import SqliteStore

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.INGESTED: frozenset({PipelineState.SCREENING, PipelineState.ERROR}),
    PipelineState.SCREENING: frozenset(
        {PipelineState.REJECTED, PipelineState.ENRICHING, PipelineState.ERROR}
    ),
    PipelineState.ENRICHING: frozenset({PipelineState.DECIDING, PipelineState.ERROR}),
    PipelineState.DECIDING: frozenset({PipelineState.COMPLETED, PipelineState.ERROR}),
}

_TERMINAL_STATUS = {
    PipelineState.REJECTED: AnalysisStatus.REJECTED,
    PipelineState.COMPLETED: AnalysisStatus.COMPLETED,
    PipelineState.ERROR: AnalysisStatus.ERROR,
}

_DEFAULT_MAX_TOKENS = {
    ModelRole.SCREENING: 2000,
    ModelRole.RESEARCH: 800,
    ModelRole.SYNTHESIS: 2000,
}


def new_owner_id() -> str:
    """Unique claim-owner id for one worker invocation."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def normalize_decision(s3: Stage3Result) -> Stage3Result:
    """NO_TRADE always means ``would_trade=False``; nothing else is implied."""
    if s3.trade_decision is TradeDecision.NO_TRADE and s3.would_trade:
        return dataclasses.replace(s3, would_trade=False)
    return s3


# Score thresholds for the rule-based risk filters.
_MIN_SCORE_DEFENSIVE_INTRADAY = 6
_MIN_SCORE_POSITION = 7
_BREAKING_MIN_SCORE = 8
_BREAKING_MAX_TIER = 2
_BREAKING_MAX_AGE = timedelta(minutes=60)


def apply_risk_filters(stage1: Stage1Result, s3: Stage3Result, item: NewsItem) -> Stage3Result:
    """Block signals the fixed risk rules reject.

    Only ``signal_blocked``/``block_reason`` change; ``would_trade`` and the
    decision are left as the model gave them.  A block set by the model
    keeps its own reason.
    """
    if s3.signal_blocked or s3.trade_decision is TradeDecision.NO_TRADE:
        return s3
    reason: str | None = None
    if not (stage1.affected_assets or item.tickers or s3.primary_asset):
        reason = "No clear asset exposure"
    elif (
        s3.risk_mode is RiskMode.CONSERVATIVE
        and s3.time_horizon is TimeHorizon.INTRADAY
        and s3.importance_score < _MIN_SCORE_DEFENSIVE_INTRADAY
    ):
        reason = "Conservative risk mode blocks low-conviction intraday trades"
    elif s3.time_horizon is TimeHorizon.POSITION and s3.importance_score < _MIN_SCORE_POSITION:
        reason = f"Position trades require importance >= {_MIN_SCORE_POSITION}"
    if reason is None:
        return s3
    return dataclasses.replace(s3, signal_blocked=True, block_reason=reason)


def is_breaking_news(
    s3: Stage3Result | None,
    credibility: SourceCredibility,
    published_at: datetime,
    *,
    now: datetime | None = None,
) -> bool:
    """High-importance news from a tier 1-2 source, less than an hour old."""
    if s3 is None:
        return False
    age = (now or utcnow()) - published_at
    return (
        s3.importance_score >= _BREAKING_MIN_SCORE
        and credibility.tier <= _BREAKING_MAX_TIER
        and age < _BREAKING_MAX_AGE
    )


def _billed_requests(res: ModelResult) -> int:
    """0 when the call never reached the provider, else 1."""
    if res.attempts == 0:
        return 0
    if isinstance(res.error, ModelServerError) and res.error.status_code is None:
        return 0
    return 1


def lookup_symbols(affected_assets: Iterable[str], tickers: Iterable[str]) -> List[str]:
    """Market-data symbols for enrichment.

    Strips TradingView-style exchange prefixes (``NASDAQ:AAPL`` → ``AAPL``)
    and ``$`` cashtags, upper-cases, and merges the item's own tickers.
    Order is preserved, duplicates dropped.
    """
    out: List[str] = []
    for raw in list(affected_assets) + sorted(tickers):
        sym = str(raw).strip().lstrip("$")
        if ":" in sym:
            sym = sym.rsplit(":", 1)[1]
        sym = sym.strip().upper()
        if sym and sym not in out:
            out.append(sym)
    return out


class _StateTracker:
    """Validates transitions for one item."""

    def __init__(self, news_id: str) -> None:
        self.news_id = news_id
        self.state = PipelineState.INGESTED

    def advance(self, to: PipelineState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if to not in allowed:
            raise RuntimeError(f"illegal transition {self.state.value} → {to.value} for {self.news_id}")
        logger.debug("%s: %s → %s", self.news_id, self.state.value, to.value)
        self.state = to


@dataclass
class PipelineOutcome:
    """Result of ``StagePipeline.process``.

    ``duplicate``: a stored record already existed and is returned as-is.
    ``in_flight``: another worker holds the claim; ``record`` is None.
    ``inserted``: this call created the stored record.
    """

    record: Optional[AnalysisRecord]
    duplicate: bool = False
    in_flight: bool = False
    inserted: bool = False
    retry_after_s: float = 0.0


class StagePipeline:
    def __init__(
        self,
        gateway: ModelGateway,
        store: SqliteStore,
        prices: PriceTable,
        *,
        market_data: MarketDataProvider | None = None,
        bus: SignalBus | None = None,
        max_output_tokens: Mapping[ModelRole, int] | None = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.prices = prices
        self.market_data = market_data
        self.bus = bus
        self.max_output_tokens = dict(_DEFAULT_MAX_TOKENS)
        if max_output_tokens:
            self.max_output_tokens.update(max_output_tokens)

    @classmethod
    def from_config(cls, cfg, gateway, store, **kwargs) -> StagePipeline:
        return cls(
            gateway,
            store,
            PriceTable.from_config(cfg),
            max_output_tokens={role: cfg.max_output_tokens(role) for role in ModelRole},
            **kwargs,
        )

    # ── Unit of work ────────────────────────────────────────────

    def process(self, item: NewsItem, *, owner: str | None = None) -> PipelineOutcome:
        """Analyse *item* once: claim, run stages, persist, publish."""
        if not item.is_valid:
            raise InvalidNewsItem(f"{item.id}: news item has neither title nor body")
        owner = owner or new_owner_id()

        claim = self.store.try_claim(item.id, owner)
        if claim.already_exists:
            logger.debug("%s already analysed, returning stored record", item.id)
            return PipelineOutcome(record=claim.existing_record, duplicate=True)
        if claim.in_flight:
            logger.info("%s is being analysed by %s", item.id, claim.holder)
            return PipelineOutcome(record=None, in_flight=True, retry_after_s=claim.retry_after_s)

        try:
            record = self.run_stages(item)
            inserted = self.store.upsert(record)
        except BaseException:
            self.store.release_claim(item.id, owner)
            raise

        logger.info(
            "%s → %s (cost %s, %.0f ms)",
            item.id, record.status.value, record.costs.total, record.timing.get("total_ms", 0.0),
        )
        if inserted:
            self._publish(record)
        return PipelineOutcome(record=record, inserted=inserted)

    def reprocess(self, news_id: str, *, force: bool = False, owner: str | None = None) -> AnalysisRecord:
        """Re-run the stages for a stored record and overwrite it.

        Only ``Error`` records are reprocessed unless *force* is set.  The id
        is claimed first; raises ``DuplicateClaim`` while another owner
        holds a live claim on it.
        """
        old = self.store.get(news_id)
        if old is None:
            raise InvalidNewsItem(f"no stored analysis for {news_id}")
        if old.status is not AnalysisStatus.ERROR and not force:
            logger.info("%s is %s, not reprocessing", news_id, old.status.value)
            return old
        owner = owner or new_owner_id()
        claim = self.store.try_claim(news_id, owner, replace=True)
        if claim.in_flight:
            raise DuplicateClaim(news_id, retry_after_s=claim.retry_after_s)
        try:
            record = self.run_stages(old.news)
            record.created_at = old.created_at
            self.store.upsert(record)
        except BaseException:
            self.store.release_claim(news_id, owner)
            raise
        logger.info("%s reprocessed: %s → %s", news_id, old.status.value, record.status.value)
        self._publish(record)
        return record

    def _publish(self, record: AnalysisRecord) -> None:
        if self.bus is not None and record.status is AnalysisStatus.COMPLETED:
            self.bus.emit(SignalProduced(record))

    # ── Stages ──────────────────────────────────────────────────

    def run_stages(self, item: NewsItem) -> AnalysisRecord:
        """Run Screen → Enrich → Decide and return the terminal record.

        Does not touch the store.  Every billed call is on the ledger,
        whatever the outcome.
        """
        ledger = CostLedger(self.prices)
        tracker = _StateTracker(item.id)
        timing: dict[str, float] = {}
        stage1: Stage1Result | None = None
        stage2: Stage2Result | None = None
        stage3: Stage3Result | None = None
        credibility = source_credibility(item.source)
        t_start = time.monotonic()

        def finish(state: PipelineState, error: str | None = None) -> AnalysisRecord:
            if tracker.state is not state:
                tracker.advance(state)
            timing["total_ms"] = round((time.monotonic() - t_start) * 1000, 1)
            return AnalysisRecord(
                news_id=item.id,
                news=item,
                status=_TERMINAL_STATUS[state],
                costs=ledger.snapshot(),
                stage1=stage1,
                stage2=stage2,
                stage3=stage3,
                error=error,
                timing=dict(timing),
                source_credibility=credibility,
                is_breaking=(
                    state is PipelineState.COMPLETED
                    and is_breaking_news(stage3, credibility, item.published_at)
                ),
            )

        try:
            # Screen
            tracker.advance(PipelineState.SCREENING)
            t0 = time.monotonic()
            res = self.gateway.call(
                ModelRole.SCREENING,
                SCREENING_SYSTEM,
                build_screening_prompt(item),
                self.max_output_tokens[ModelRole.SCREENING],
                coerce=coerce_stage1,
            )
            ledger.add_usage(ModelRole.SCREENING, res.usage, requests=_billed_requests(res))
            timing["screening_ms"] = _ms(t0)
            if not res.ok:
                return finish(PipelineState.ERROR, f"screening: {type(res.error).__name__}: {res.error}")
            stage1 = res.data
            if not stage1.should_deepen:
                return finish(PipelineState.REJECTED)

            # Enrich
            tracker.advance(PipelineState.ENRICHING)
            stage2 = self._enrich(item, stage1, ledger, timing)

            # Decide
            tracker.advance(PipelineState.DECIDING)
            t0 = time.monotonic()
            res = self.gateway.call(
                ModelRole.SYNTHESIS,
                SYNTHESIS_SYSTEM,
                build_synthesis_prompt(item, stage1, stage2),
                self.max_output_tokens[ModelRole.SYNTHESIS],
                coerce=coerce_stage3,
            )
            ledger.add_usage(ModelRole.SYNTHESIS, res.usage, requests=_billed_requests(res))
            timing["synthesis_ms"] = _ms(t0)
            if not res.ok:
                return finish(PipelineState.ERROR, f"synthesis: {type(res.error).__name__}: {res.error}")
            stage3 = apply_risk_filters(stage1, normalize_decision(res.data), item)
            return finish(PipelineState.COMPLETED)
        except Exception as exc:
            logger.exception("%s: unexpected failure in state %s", item.id, tracker.state.value)
            return finish(PipelineState.ERROR, f"{tracker.state.value.lower()}: {type(exc).__name__}: {exc}")

    def _lookup(self, symbols: List[str], item: NewsItem) -> Tuple[List[PriceSnapshot], List[str]]:
        snapshots: List[PriceSnapshot] = []
        missing: List[str] = []
        for sym in symbols:
            if self.market_data is None:
                missing.append(sym)
                continue
            try:
                snap = self.market_data.get_snapshot(sym, item.published_at)
            except MarketDataMiss as exc:
                logger.warning("%s: market data miss for %s: %s", item.id, sym, _sanitize_exc(exc))
                missing.append(sym)
                continue
            except Exception as exc:
                logger.warning(
                    "%s: market data provider failed for %s: %s: %s",
                    item.id, sym, type(exc).__name__, _sanitize_exc(exc),
                )
                missing.append(sym)
                continue
            if snap is None:
                missing.append(sym)
            else:
                snapshots.append(snap)
        return snapshots, missing

    def _enrich(
        self,
        item: NewsItem,
        stage1: Stage1Result,
        ledger: CostLedger,
        timing: dict[str, float],
    ) -> Stage2Result:
        t0 = time.monotonic()
        symbols = lookup_symbols(stage1.affected_assets, item.tickers)
        snapshots, missing = self._lookup(symbols, item) if symbols else ([], [])
        timing["market_data_ms"] = _ms(t0)

        t0 = time.monotonic()
        res = self.gateway.call(
            ModelRole.RESEARCH,
            RESEARCH_SYSTEM,
            build_research_prompt(item, stage1, snapshots, missing),
            self.max_output_tokens[ModelRole.RESEARCH],
            expect_json=False,
        )
        ledger.add_usage(ModelRole.RESEARCH, res.usage, requests=_billed_requests(res))
        timing["research_ms"] = _ms(t0)
        if not res.ok:
            logger.warning("%s: research unavailable, deciding without it: %s", item.id, res.error)
        text = res.text.strip() if res.ok else ""
        return Stage2Result(
            market_reaction=tuple(snapshots),
            external_impact=text,
            raw_research_text=text,
            missing_symbols=tuple(missing),
            citations=res.citations if res.ok else (),
            research_available=res.ok and bool(text),
        )


def _ms(t0: float) -> float:
    return round((time.monotonic() - t0) * 1000, 1)
