"""On-demand gateway: quota, validation, dedup against the shared store."""

from __future__ import annotations

import pytest

from newsstack_ai.common_types import AnalysisStatus, ModelRole
from newsstack_ai.errors import DuplicateClaim, InvalidNewsItem, QuotaExceeded
from newsstack_ai.on_demand import OnDemandGateway
from newsstack_ai.pipeline import StagePipeline
from newsstack_ai.quota import QuotaConfig, QuotaLimiter
from newsstack_ai.store_sqlite import SqliteStore
from tests.fakes import (
    SCREEN_REJECT,
    TEST_PRICES,
    FakeGateway,
    FakeMarketData,
    full_path_script,
    make_item,
    make_record,
)


class FakeClock:
    def __init__(self, t: float = 1_000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def sleep(self, s: float) -> None:
        self.t += s


@pytest.fixture
def store():
    s = SqliteStore(":memory:")
    yield s
    s.close()


def _gateway(store, gw=None, *, per_window=5, clock=None, **kwargs):
    clock = clock or FakeClock()
    pipeline = StagePipeline(
        gw or FakeGateway(full_path_script()), store, TEST_PRICES,
        market_data=FakeMarketData({"AAPL": "190"}),
    )
    quota = QuotaLimiter(QuotaConfig(per_window, 60.0), clock=clock)
    return OnDemandGateway(pipeline, quota, sleep=clock.sleep, clock=clock, **kwargs)


class TestAnalyze:

    def test_single_item_returns_record(self, store):
        od = _gateway(store)
        record = od.analyze("alice", make_item("fmp-000000000001"))
        assert record.status is AnalysisStatus.COMPLETED
        assert store.exists("fmp-000000000001")

    def test_list_returns_list(self, store):
        od = _gateway(store)
        records = od.analyze("alice", [make_item("fmp-000000000001"), make_item("fmp-000000000002")])
        assert [r.news_id for r in records] == ["fmp-000000000001", "fmp-000000000002"]

    def test_dict_input_is_normalised(self, store):
        od = _gateway(store)
        record = od.analyze("alice", {"title": "Apple beats", "body": "Revenue up.", "url": "https://x.test/a"})
        assert record.news_id.startswith("url-")
        assert record.news.url == "https://x.test/a"

    def test_resubmission_returns_stored_record_without_model_calls(self, store):
        gw = FakeGateway(full_path_script())
        od = _gateway(store, gw)
        first = od.analyze("alice", make_item("fmp-000000000001"))
        calls = len(gw.calls)
        second = od.analyze("bob", make_item("fmp-000000000001"))
        assert len(gw.calls) == calls
        assert second.to_dict() == first.to_dict()

    def test_rejected_item_is_not_enriched(self, store):
        gw = FakeGateway(full_path_script(**{ModelRole.SCREENING: [SCREEN_REJECT]}))
        record = _gateway(store, gw).analyze("alice", make_item())
        assert record.status is AnalysisStatus.REJECTED
        assert gw.calls_for(ModelRole.RESEARCH) == []


class TestValidation:

    def test_invalid_item_not_charged(self, store):
        od = _gateway(store, per_window=1)
        with pytest.raises(InvalidNewsItem):
            od.analyze("alice", {"title": "", "body": ""})
        assert od.quota.remaining("alice") == 1

    def test_one_bad_item_rejects_whole_list(self, store):
        gw = FakeGateway(full_path_script())
        od = _gateway(store, gw)
        with pytest.raises(InvalidNewsItem):
            od.analyze("alice", [make_item(), {"published_at": "x"}])
        assert gw.calls == []

    def test_empty_list(self, store):
        with pytest.raises(InvalidNewsItem):
            _gateway(store).analyze("alice", [])

    def test_oversized_list_rejected_before_charging(self, store):
        gw = FakeGateway(full_path_script())
        od = _gateway(store, gw, per_window=1, max_batch=3)
        with pytest.raises(InvalidNewsItem, match="at most 3 items"):
            od.analyze("alice", [make_item(f"fmp-00000000000{i}") for i in range(4)])
        assert od.quota.remaining("alice") == 1
        assert gw.calls == []
        assert not store.exists("fmp-000000000000")

    def test_list_at_limit_accepted(self, store):
        od = _gateway(store, per_window=1, max_batch=2)
        records = od.analyze("alice", [make_item("fmp-000000000001"), make_item("fmp-000000000002")])
        assert len(records) == 2
        assert od.quota.remaining("alice") == 0


class TestQuota:

    def test_exceeded_with_retry_after(self, store):
        clock = FakeClock(1_000.0)
        od = _gateway(store, per_window=2, clock=clock)
        od.analyze("alice", make_item("fmp-000000000001"))
        od.analyze("alice", make_item("fmp-000000000002"))
        with pytest.raises(QuotaExceeded) as exc:
            od.analyze("alice", make_item("fmp-000000000003"))
        # 1000 s lies in the window [960, 1020).
        assert exc.value.retry_after_s == pytest.approx(20.0)
        assert exc.value.to_dict()["caller_id"] == "alice"
        assert not store.exists("fmp-000000000003")

    def test_quota_is_per_caller(self, store):
        od = _gateway(store, per_window=1)
        od.analyze("alice", make_item("fmp-000000000001"))
        od.analyze("bob", make_item("fmp-000000000002"))
        with pytest.raises(QuotaExceeded):
            od.analyze("alice", make_item("fmp-000000000003"))

    def test_window_reset(self, store):
        clock = FakeClock(1_000.0)
        od = _gateway(store, per_window=1, clock=clock)
        od.analyze("alice", make_item("fmp-000000000001"))
        clock.t = 1_021.0
        od.analyze("alice", make_item("fmp-000000000002"))

    def test_list_charged_once(self, store):
        od = _gateway(store, per_window=2)
        od.analyze("alice", [make_item(f"fmp-00000000000{i}") for i in range(3)])
        assert od.quota.remaining("alice") == 1

    def test_limiter_rejects_bad_config(self):
        with pytest.raises(ValueError):
            QuotaLimiter(QuotaConfig(0))


class TestInFlight:

    def test_waits_for_other_worker_record(self, store):
        store.try_claim("fmp-000000000001", "other-worker")
        clock = FakeClock()
        od = _gateway(store, clock=clock, claim_wait_s=5.0, poll_interval_s=1.0)

        def sleep_and_finish(s):
            clock.sleep(s)
            if clock.t >= 1_002.0 and not store.exists("fmp-000000000001"):
                store.upsert(make_record("fmp-000000000001"))

        od._sleep = sleep_and_finish
        record = od.analyze("alice", make_item("fmp-000000000001"))
        assert record.news_id == "fmp-000000000001"
        assert record.status is AnalysisStatus.REJECTED

    def test_gives_up_with_duplicate_claim(self, store):
        store.try_claim("fmp-000000000001", "other-worker")
        od = _gateway(store, claim_wait_s=3.0, poll_interval_s=1.0)
        with pytest.raises(DuplicateClaim) as exc:
            od.analyze("alice", make_item("fmp-000000000001"))
        assert exc.value.news_id == "fmp-000000000001"
        assert exc.value.retry_after_s > 0
