"""Stage pipeline: gate, enrichment tolerance, normalisation, costs, idempotence."""

from __future__ import annotations

import dataclasses
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from newsstack_ai.common_types import (
    AnalysisStatus,
    ModelRole,
    PipelineState,
    RiskMode,
    SourceCredibility,
    Stage1Result,
    Stage3Result,
    TimeHorizon,
    TradeDecision,
    Usage,
)
from newsstack_ai.errors import DuplicateClaim, InvalidNewsItem, ModelServerError
from newsstack_ai.events import SignalBus
from newsstack_ai.pipeline import (
    StagePipeline,
    _StateTracker,
    apply_risk_filters,
    is_breaking_news,
    lookup_symbols,
    normalize_decision,
)
from newsstack_ai.prompts import NO_ENRICHMENT_MARKER
from newsstack_ai.store_sqlite import SqliteStore
from tests.fakes import (
    DECIDE_BUY,
    FULL_PATH_COST,
    RESEARCH_TEXT,
    SCREEN_ACCEPT,
    SCREEN_ONLY_COST,
    SCREEN_REJECT,
    TEST_PRICES,
    FakeGateway,
    FakeMarketData,
    full_path_script,
    make_item,
)


def _pipeline(gateway, market_data=None, store=None):
    events = []
    bus = SignalBus()
    bus.subscribe(events.append)
    pipe = StagePipeline(
        gateway,
        store or SqliteStore(":memory:"),
        TEST_PRICES,
        market_data=market_data if market_data is not None else FakeMarketData({"AAPL": "190.5"}),
        bus=bus,
    )
    return pipe, events


class TestScreenedOut(unittest.TestCase):

    def test_rejected_item_spends_only_on_screening(self):
        gw = FakeGateway({ModelRole.SCREENING: [SCREEN_REJECT]})
        md = FakeMarketData({"AAPL": "1"})
        pipe, events = _pipeline(gw, md)
        out = pipe.process(make_item())
        rec = out.record
        self.assertTrue(out.inserted)
        self.assertEqual(rec.status, AnalysisStatus.REJECTED)
        self.assertIsNotNone(rec.stage1)
        self.assertIsNone(rec.stage2)
        self.assertIsNone(rec.stage3)
        self.assertEqual([r for r, _ in gw.calls], [ModelRole.SCREENING])
        self.assertEqual(md.calls, [])
        self.assertEqual(rec.costs.total, SCREEN_ONLY_COST)
        self.assertEqual(rec.costs.research.request_count, 0)
        self.assertEqual(rec.costs.synthesis.request_count, 0)
        self.assertEqual(events, [])


class TestFullPath(unittest.TestCase):

    def test_completed_record(self):
        gw = FakeGateway(full_path_script())
        pipe, events = _pipeline(gw)
        item = make_item()
        out = pipe.process(item)
        rec = out.record
        self.assertEqual(rec.status, AnalysisStatus.COMPLETED)
        self.assertEqual([s.symbol for s in rec.stage2.market_reaction], ["AAPL"])
        self.assertEqual(rec.stage2.external_impact, RESEARCH_TEXT)
        self.assertTrue(rec.stage2.research_available)
        self.assertEqual(rec.stage3.trade_decision, TradeDecision.BUY)
        self.assertTrue(rec.is_actionable)
        self.assertEqual(rec.costs.total, FULL_PATH_COST)
        for line in (rec.costs.screening, rec.costs.research, rec.costs.synthesis):
            self.assertEqual(line.request_count, 1)
        self.assertEqual(rec.source_credibility.tier, 1)
        for key in ("screening_ms", "market_data_ms", "research_ms", "synthesis_ms", "total_ms"):
            self.assertIn(key, rec.timing)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].news_id, item.id)

    def test_stored_record_matches_returned(self):
        gw = FakeGateway(full_path_script())
        pipe, _ = _pipeline(gw)
        rec = pipe.process(make_item()).record
        stored = pipe.store.get(rec.news_id)
        self.assertEqual(stored.to_dict(), rec.to_dict())

    def test_research_prompt_carries_snapshots(self):
        gw = FakeGateway(full_path_script())
        pipe, _ = _pipeline(gw)
        pipe.process(make_item())
        research_prompt = gw.calls_for(ModelRole.RESEARCH)[0]
        self.assertIn("AAPL: 190.5", research_prompt)
        self.assertIn("AAPL after-hours move", research_prompt)


class TestMarketDataOutage(unittest.TestCase):

    def test_outage_recorded_and_decision_still_made(self):
        gw = FakeGateway(full_path_script())
        md = FakeMarketData(fail={"*"})
        pipe, events = _pipeline(gw, md)
        rec = pipe.process(make_item()).record
        self.assertEqual(rec.status, AnalysisStatus.COMPLETED)
        self.assertEqual(rec.stage2.market_reaction, ())
        self.assertEqual(rec.stage2.missing_symbols, ("AAPL",))
        self.assertIn("AAPL: no market data", gw.calls_for(ModelRole.SYNTHESIS)[0])
        self.assertEqual(len(events), 1)

    def test_not_found_symbol_recorded_as_missing(self):
        gw = FakeGateway(full_path_script())
        md = FakeMarketData({"AAPL": "190"})
        pipe, _ = _pipeline(gw, md)
        rec = pipe.process(make_item(tickers=("ZZZZ",))).record
        self.assertEqual([s.symbol for s in rec.stage2.market_reaction], ["AAPL"])
        self.assertEqual(rec.stage2.missing_symbols, ("ZZZZ",))

    def test_no_symbols_skips_lookup(self):
        accept = dict(SCREEN_ACCEPT, affectedAssets=[])
        gw = FakeGateway(full_path_script(**{ModelRole.SCREENING: [accept]}))
        md = FakeMarketData({"AAPL": "1"})
        pipe, _ = _pipeline(gw, md)
        rec = pipe.process(make_item(tickers=())).record
        self.assertEqual(md.calls, [])
        self.assertEqual(rec.status, AnalysisStatus.COMPLETED)
        self.assertEqual(rec.stage2.market_reaction, ())

    def test_unexpected_provider_exception_does_not_abort_enrichment(self):
        for error in (ConnectionError, RuntimeError):
            with self.subTest(error=error.__name__):
                gw = FakeGateway(full_path_script())
                md = FakeMarketData(fail={"*"}, error=error)
                pipe, _ = _pipeline(gw, md)
                rec = pipe.process(make_item()).record
                self.assertEqual(rec.status, AnalysisStatus.COMPLETED)
                self.assertEqual(rec.stage2.market_reaction, ())
                self.assertEqual(rec.stage2.missing_symbols, ("AAPL",))
                self.assertIsNone(rec.error)
                self.assertEqual(rec.costs.total, FULL_PATH_COST)


class TestResearchDegradation(unittest.TestCase):

    def test_research_failure_still_decides(self):
        script = full_path_script(**{
            ModelRole.RESEARCH: [ModelServerError("bad gateway", role=ModelRole.RESEARCH, status_code=502)],
        })
        gw = FakeGateway(script)
        pipe, _ = _pipeline(gw)
        rec = pipe.process(make_item()).record
        self.assertEqual(rec.status, AnalysisStatus.COMPLETED)
        self.assertFalse(rec.stage2.research_available)
        self.assertEqual(rec.stage2.external_impact, "")
        self.assertIn(NO_ENRICHMENT_MARKER, gw.calls_for(ModelRole.SYNTHESIS)[0])
        # The provider answered, so the request fee is billed (no tokens).
        self.assertEqual(rec.costs.research.request_count, 1)
        self.assertEqual(rec.costs.research.input_tokens, 0)
        self.assertEqual(rec.costs.research.cost, Decimal("0.005"))

    def test_unreachable_research_provider_not_billed(self):
        script = full_path_script(**{
            ModelRole.RESEARCH: [ModelServerError("connection refused", role=ModelRole.RESEARCH)],
        })
        pipe, _ = _pipeline(FakeGateway(script))
        rec = pipe.process(make_item()).record
        self.assertEqual(rec.status, AnalysisStatus.COMPLETED)
        self.assertEqual(rec.costs.research.request_count, 0)
        self.assertEqual(rec.costs.research.cost, Decimal("0"))
        self.assertEqual(rec.costs.total, SCREEN_ONLY_COST + Decimal("0.006"))


class TestFatalFailures(unittest.TestCase):

    def test_screening_parse_failure(self):
        gw = FakeGateway({ModelRole.SCREENING: ["I cannot answer that."]})
        pipe, events = _pipeline(gw)
        out = pipe.process(make_item())
        rec = out.record
        self.assertTrue(out.inserted)
        self.assertEqual(rec.status, AnalysisStatus.ERROR)
        self.assertIsNone(rec.stage1)
        self.assertIn("ParseError", rec.error)
        # Billed-but-unparseable usage is kept.
        self.assertEqual(rec.costs.screening.input_tokens, 1000)
        self.assertEqual(rec.costs.total, SCREEN_ONLY_COST)
        self.assertEqual(events, [])

    def test_synthesis_failure_keeps_completed_stages(self):
        script = full_path_script(**{ModelRole.SYNTHESIS: ['{"importanceScore": 5}']})
        gw = FakeGateway(script)
        pipe, _ = _pipeline(gw)
        rec = pipe.process(make_item()).record
        self.assertEqual(rec.status, AnalysisStatus.ERROR)
        self.assertIsNotNone(rec.stage1)
        self.assertIsNotNone(rec.stage2)
        self.assertIsNone(rec.stage3)
        self.assertTrue(rec.error.startswith("synthesis:"))
        self.assertEqual(rec.costs.total, FULL_PATH_COST)

    def test_error_record_not_retried_on_resubmission(self):
        gw = FakeGateway({ModelRole.SCREENING: ["garbage"]})
        pipe, _ = _pipeline(gw)
        pipe.process(make_item())
        out = pipe.process(make_item())
        self.assertTrue(out.duplicate)
        self.assertEqual(out.record.status, AnalysisStatus.ERROR)
        self.assertEqual(len(gw.calls), 1)

    def test_invalid_item_rejected_before_any_call(self):
        gw = FakeGateway({})
        pipe, _ = _pipeline(gw)
        with self.assertRaises(InvalidNewsItem):
            pipe.process(make_item(title="  ", body=""))
        self.assertEqual(gw.calls, [])


class TestDecisionNormalisation(unittest.TestCase):

    def _s3(self, decision, would_trade, blocked=False):
        return Stage3Result(
            trade_decision=decision,
            importance_score=5,
            signal_blocked=blocked,
            block_reason="risky" if blocked else None,
            would_trade=would_trade,
            time_horizon=TimeHorizon.SWING,
            risk_mode=RiskMode.NORMAL,
        )

    def test_no_trade_forces_would_trade_false(self):
        s3 = normalize_decision(self._s3(TradeDecision.NO_TRADE, True))
        self.assertFalse(s3.would_trade)

    def test_other_decisions_untouched(self):
        s3 = self._s3(TradeDecision.SELL, False)
        self.assertIs(normalize_decision(s3), s3)

    def test_blocked_and_would_trade_independent(self):
        s3 = normalize_decision(self._s3(TradeDecision.BUY, True, blocked=True))
        self.assertTrue(s3.signal_blocked)
        self.assertTrue(s3.would_trade)

    def test_pipeline_applies_normalisation(self):
        decide = dict(DECIDE_BUY, tradeDecision="NO_TRADE", wouldTrade=True)
        gw = FakeGateway(full_path_script(**{ModelRole.SYNTHESIS: [decide]}))
        pipe, events = _pipeline(gw)
        rec = pipe.process(make_item()).record
        self.assertFalse(rec.stage3.would_trade)
        self.assertFalse(rec.is_actionable)
        # Completed even when there is nothing to trade.
        self.assertEqual(len(events), 1)

    def test_blocked_signal_persisted(self):
        decide = dict(DECIDE_BUY, signalBlocked=True, blockReason="already priced in")
        gw = FakeGateway(full_path_script(**{ModelRole.SYNTHESIS: [decide]}))
        pipe, _ = _pipeline(gw)
        rec = pipe.process(make_item()).record
        stored = pipe.store.get(rec.news_id)
        self.assertTrue(stored.stage3.signal_blocked)
        self.assertEqual(stored.stage3.block_reason, "already priced in")
        self.assertFalse(stored.is_actionable)


class TestRiskFilters(unittest.TestCase):

    STAGE1 = Stage1Result(
        title="t", analysis_text="a", should_deepen=True, category=None, affected_assets=("NASDAQ:AAPL",),
    )

    def _s3(self, score=8, horizon=TimeHorizon.SWING, mode=RiskMode.NORMAL, **kw):
        values = dict(
            trade_decision=TradeDecision.BUY,
            importance_score=score,
            signal_blocked=False,
            block_reason=None,
            would_trade=True,
            time_horizon=horizon,
            risk_mode=mode,
            primary_asset="NASDAQ:AAPL",
        )
        values.update(kw)
        return Stage3Result(**values)

    def test_clean_signal_passes(self):
        s3 = self._s3()
        self.assertIs(apply_risk_filters(self.STAGE1, s3, make_item()), s3)

    def test_conservative_intraday_needs_score_six(self):
        low = apply_risk_filters(
            self.STAGE1, self._s3(5, TimeHorizon.INTRADAY, RiskMode.CONSERVATIVE), make_item(),
        )
        self.assertTrue(low.signal_blocked)
        self.assertIn("Conservative", low.block_reason)
        self.assertTrue(low.would_trade)
        self.assertIs(low.trade_decision, TradeDecision.BUY)
        ok = apply_risk_filters(
            self.STAGE1, self._s3(6, TimeHorizon.INTRADAY, RiskMode.CONSERVATIVE), make_item(),
        )
        self.assertFalse(ok.signal_blocked)
        normal = apply_risk_filters(self.STAGE1, self._s3(5, TimeHorizon.INTRADAY), make_item())
        self.assertFalse(normal.signal_blocked)

    def test_position_needs_score_seven(self):
        low = apply_risk_filters(self.STAGE1, self._s3(6, TimeHorizon.POSITION), make_item())
        self.assertEqual(low.block_reason, "Position trades require importance >= 7")
        ok = apply_risk_filters(self.STAGE1, self._s3(7, TimeHorizon.POSITION), make_item())
        self.assertFalse(ok.signal_blocked)

    def test_no_asset_exposure_blocks_first(self):
        stage1 = dataclasses.replace(self.STAGE1, affected_assets=())
        s3 = self._s3(6, TimeHorizon.POSITION, primary_asset=None)
        out = apply_risk_filters(stage1, s3, make_item(tickers=()))
        self.assertTrue(out.signal_blocked)
        self.assertEqual(out.block_reason, "No clear asset exposure")

    def test_item_tickers_count_as_exposure(self):
        stage1 = dataclasses.replace(self.STAGE1, affected_assets=())
        out = apply_risk_filters(stage1, self._s3(primary_asset=None), make_item(tickers=("MSFT",)))
        self.assertFalse(out.signal_blocked)

    def test_model_block_and_no_trade_untouched(self):
        blocked = self._s3(3, TimeHorizon.POSITION, signal_blocked=True, block_reason="already priced in")
        self.assertIs(apply_risk_filters(self.STAGE1, blocked, make_item()), blocked)
        flat = self._s3(3, TimeHorizon.POSITION, trade_decision=TradeDecision.NO_TRADE, would_trade=False)
        self.assertIs(apply_risk_filters(self.STAGE1, flat, make_item()), flat)

    def test_pipeline_blocks_low_conviction_position_trade(self):
        decide = dict(DECIDE_BUY, timeHorizon="position", importanceScore=6)
        gw = FakeGateway(full_path_script(**{ModelRole.SYNTHESIS: [decide]}))
        pipe, events = _pipeline(gw)
        rec = pipe.process(make_item()).record
        self.assertEqual(rec.status, AnalysisStatus.COMPLETED)
        self.assertTrue(rec.stage3.signal_blocked)
        self.assertTrue(rec.stage3.would_trade)
        self.assertFalse(rec.is_actionable)
        self.assertTrue(pipe.store.get(rec.news_id).stage3.signal_blocked)
        self.assertEqual(len(events), 1)


class TestBreakingNews(unittest.TestCase):

    NOW = datetime(2025, 3, 3, 15, 0, tzinfo=timezone.utc)
    TIER1 = SourceCredibility(tier=1, score=95, label="Reuters")

    def _s3(self, score):
        return Stage3Result(
            trade_decision=TradeDecision.BUY,
            importance_score=score,
            signal_blocked=False,
            block_reason=None,
            would_trade=True,
            time_horizon=TimeHorizon.INTRADAY,
            risk_mode=RiskMode.NORMAL,
        )

    def test_fresh_important_credible(self):
        published = self.NOW - timedelta(minutes=10)
        self.assertTrue(is_breaking_news(self._s3(8), self.TIER1, published, now=self.NOW))

    def test_every_condition_required(self):
        fresh = self.NOW - timedelta(minutes=10)
        tier3 = SourceCredibility(tier=3, score=50, label="blog")
        self.assertFalse(is_breaking_news(self._s3(7), self.TIER1, fresh, now=self.NOW))
        self.assertFalse(is_breaking_news(self._s3(9), tier3, fresh, now=self.NOW))
        self.assertFalse(
            is_breaking_news(self._s3(9), self.TIER1, self.NOW - timedelta(minutes=60), now=self.NOW)
        )
        self.assertFalse(is_breaking_news(None, self.TIER1, fresh, now=self.NOW))

    def test_pipeline_flags_breaking_record(self):
        pipe, events = _pipeline(FakeGateway(full_path_script()))
        rec = pipe.process(make_item(minutes_ago=5)).record
        self.assertTrue(rec.is_breaking)
        self.assertTrue(pipe.store.get(rec.news_id).is_breaking)
        self.assertTrue(events[0].to_dict()["breaking"])

    def test_rejected_and_unknown_source_not_breaking(self):
        pipe, _ = _pipeline(FakeGateway(full_path_script()))
        rec = pipe.process(make_item("fmp-bbbbbbbbbbbb", source="somebody's blog")).record
        self.assertFalse(rec.is_breaking)
        gw = FakeGateway({ModelRole.SCREENING: [SCREEN_REJECT]})
        pipe, _ = _pipeline(gw)
        self.assertFalse(pipe.process(make_item()).record.is_breaking)


class TestIdempotence(unittest.TestCase):

    def test_second_submission_is_a_read(self):
        gw = FakeGateway(full_path_script())
        pipe, events = _pipeline(gw)
        first = pipe.process(make_item())
        calls = len(gw.calls)
        second = pipe.process(make_item())
        self.assertTrue(second.duplicate)
        self.assertFalse(second.inserted)
        self.assertEqual(len(gw.calls), calls)
        self.assertEqual(second.record.to_dict(), pipe.store.get(first.record.news_id).to_dict())
        self.assertEqual(len(events), 1)

    def test_claim_held_elsewhere_is_in_flight(self):
        gw = FakeGateway(full_path_script())
        pipe, _ = _pipeline(gw)
        item = make_item()
        pipe.store.try_claim(item.id, "other-worker")
        out = pipe.process(item, owner="me")
        self.assertTrue(out.in_flight)
        self.assertIsNone(out.record)
        self.assertGreater(out.retry_after_s, 0)
        self.assertEqual(gw.calls, [])

    def test_claim_released_when_persisting_fails(self):
        gw = FakeGateway(full_path_script())
        pipe, _ = _pipeline(gw)
        item = make_item()
        original = pipe.store.upsert

        def boom(record):
            raise OSError("disk full")

        pipe.store.upsert = boom
        with self.assertRaises(OSError):
            pipe.process(item, owner="w1")
        pipe.store.upsert = original
        self.assertTrue(pipe.store.try_claim(item.id, "w2").claimed)


class TestReprocess(unittest.TestCase):

    def test_error_record_reprocessed(self):
        gw = FakeGateway({
            ModelRole.SCREENING: ["garbage", SCREEN_ACCEPT],
            ModelRole.RESEARCH: [RESEARCH_TEXT],
            ModelRole.SYNTHESIS: [DECIDE_BUY],
        })
        pipe, events = _pipeline(gw)
        first = pipe.process(make_item()).record
        self.assertEqual(first.status, AnalysisStatus.ERROR)
        again = pipe.reprocess(first.news_id)
        self.assertEqual(again.status, AnalysisStatus.COMPLETED)
        self.assertEqual(again.created_at, first.created_at)
        self.assertEqual(pipe.store.get(first.news_id).status, AnalysisStatus.COMPLETED)
        self.assertEqual(len(events), 1)

    def test_non_error_record_left_alone(self):
        gw = FakeGateway({ModelRole.SCREENING: [SCREEN_REJECT]})
        pipe, _ = _pipeline(gw)
        rec = pipe.process(make_item()).record
        self.assertEqual(pipe.reprocess(rec.news_id).status, AnalysisStatus.REJECTED)
        self.assertEqual(len(gw.calls), 1)

    def test_unknown_id(self):
        pipe, _ = _pipeline(FakeGateway({}))
        with self.assertRaises(InvalidNewsItem):
            pipe.reprocess("fmp-missing")

    def test_reprocess_refused_while_claim_held_elsewhere(self):
        gw = FakeGateway({ModelRole.SCREENING: ["garbage"]})
        pipe, _ = _pipeline(gw)
        first = pipe.process(make_item()).record
        pipe.store.try_claim(first.news_id, "worker-b", replace=True)
        calls = len(gw.calls)
        with self.assertRaises(DuplicateClaim):
            pipe.reprocess(first.news_id)
        self.assertEqual(len(gw.calls), calls)
        self.assertEqual(pipe.store.get(first.news_id).status, AnalysisStatus.ERROR)

    def test_reprocess_releases_claim_when_persisting_fails(self):
        gw = FakeGateway({
            ModelRole.SCREENING: ["garbage", SCREEN_REJECT],
        })
        pipe, _ = _pipeline(gw)
        first = pipe.process(make_item()).record
        original = pipe.store.upsert

        def boom(record):
            raise OSError("disk full")

        pipe.store.upsert = boom
        with self.assertRaises(OSError):
            pipe.reprocess(first.news_id, owner="w1")
        pipe.store.upsert = original
        self.assertTrue(pipe.store.try_claim(first.news_id, "w2", replace=True).claimed)


class TestHelpers(unittest.TestCase):

    def test_lookup_symbols(self):
        syms = lookup_symbols(["NASDAQ:AAPL", "$msft", "aapl", "BINANCE:BTCUSDT"], {"TSLA", "AAPL"})
        self.assertEqual(syms, ["AAPL", "MSFT", "BTCUSDT", "TSLA"])

    def test_illegal_transition(self):
        tracker = _StateTracker("x")
        tracker.advance(PipelineState.SCREENING)
        with self.assertRaises(RuntimeError):
            tracker.advance(PipelineState.COMPLETED)

    def test_usage_addition(self):
        self.assertEqual(Usage(1, 2) + Usage(3, 4), Usage(4, 6))


if __name__ == "__main__":
    unittest.main()
