"""Batch orchestrator: pull unanalysed news and run it through the pipeline.

One ``run_batch()`` call:

1. reads the news-source cursor from the store's KV table,
2. fetches items published after it (oldest first), drops ids that are
   already stored and items older than ``max_news_age_s``,
3. admits up to ``max_items`` of the rest into a bounded worker pool while
   the cost budget and the deadline allow,
4. advances the cursor over the contiguous prefix of handled items.

Safe to re-invoke at any time: the store's claim/dedup makes repeated or
overlapping runs idempotent.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .common_types import AnalysisStatus, NewsItem, NewsSource, utcnow
from .costs import quantize_cost
from .pipeline import PipelineOutcome, StagePipeline
from .store_sqlite import SqliteStore

logger = logging.getLogger(__name__)

CURSOR_KEY = "batch.cursor_epoch"


class BudgetCounter:
    """Running cost of one batch.  The only state shared across workers.

    ``None`` budget means unlimited; a zero budget admits nothing.
    """

    def __init__(self, budget: Optional[Decimal]) -> None:
        self.budget = budget
        self._spent = Decimal("0")
        self._items = 0
        self._lock = threading.Lock()

    def add(self, cost: Decimal) -> Decimal:
        with self._lock:
            self._spent = quantize_cost(self._spent + cost)
            self._items += 1
            return self._spent

    @property
    def spent(self) -> Decimal:
        with self._lock:
            return self._spent

    def mean(self) -> Decimal:
        with self._lock:
            return self._spent / self._items if self._items else Decimal("0")

    def admits(self) -> bool:
        """True if one more item may start without expecting to overrun."""
        if self.budget is None:
            return True
        with self._lock:
            if self._spent >= self.budget:
                return False
            if self._items and self._spent + self._spent / self._items > self.budget:
                return False
        return self.budget > 0


@dataclass
class BatchReport:
    fetched: int = 0
    analyzed: int = 0
    inserted: int = 0
    skipped: int = 0
    stale: int = 0
    errors: int = 0
    failed: int = 0
    rejected: int = 0
    completed: int = 0
    deferred: int = 0
    total_cost: Decimal = Decimal("0")
    budget_exhausted: bool = False
    deadline_reached: bool = False
    cursor: float = 0.0
    duration_s: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["total_cost"] = str(self.total_cost)
        return d


class BatchOrchestrator:
    def __init__(
        self,
        pipeline: StagePipeline,
        source: NewsSource,
        *,
        max_items: int = 5,
        max_concurrency: int = 3,
        max_cost_budget: Optional[Decimal] = Decimal("1.00"),
        deadline_s: Optional[float] = 240.0,
        max_news_age_s: float = 3600.0,
        fetch_limit: int = 50,
        max_stored_records: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pipeline = pipeline
        self.source = source
        self.max_items = max_items
        self.max_concurrency = max_concurrency
        self.max_cost_budget = max_cost_budget
        self.deadline_s = deadline_s
        self.max_news_age_s = max_news_age_s
        self.fetch_limit = fetch_limit
        self.max_stored_records = max_stored_records
        self._clock = clock

    @classmethod
    def from_config(cls, cfg, pipeline: StagePipeline, source: NewsSource) -> BatchOrchestrator:
        return cls(
            pipeline,
            source,
            max_items=cfg.batch_max_items,
            max_concurrency=cfg.batch_max_concurrency,
            max_cost_budget=cfg.batch_max_cost_budget,
            deadline_s=cfg.batch_deadline_s,
            max_news_age_s=cfg.max_news_age_s,
            fetch_limit=cfg.news_fetch_limit,
            max_stored_records=cfg.max_stored_records,
        )

    @property
    def store(self) -> SqliteStore:
        return self.pipeline.store

    # ── Public API ──────────────────────────────────────────────

    def run_batch(
        self,
        max_items: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        max_cost_budget: Optional[Decimal] = None,
        deadline_s: Optional[float] = None,
    ) -> BatchReport:
        """Run one batch; arguments override the constructor defaults."""
        t0 = self._clock()
        max_items = self.max_items if max_items is None else max_items
        concurrency = max(1, self.max_concurrency if max_concurrency is None else max_concurrency)
        budget = BudgetCounter(self.max_cost_budget if max_cost_budget is None else max_cost_budget)
        deadline_s = self.deadline_s if deadline_s is None else deadline_s
        deadline = t0 + deadline_s if deadline_s is not None else None

        report = BatchReport()
        cursor = float(self.store.get_kv(CURSOR_KEY) or "0")
        report.cursor = cursor

        try:
            fetched = self.source.fetch_since(cursor, max(self.fetch_limit, max_items))
        except Exception:
            logger.exception("News source fetch failed; batch aborted before admission")
            report.duration_s = round(self._clock() - t0, 3)
            return report
        ordered = sorted(fetched, key=lambda it: (it.published_at, it.id))
        report.fetched = len(ordered)

        handled: set[str] = set()
        candidates = self._select(ordered, max_items, handled, report)
        pending = deque(candidates)

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="newsstack-ai") as pool:
            futures: Dict[Future, NewsItem] = {}
            admitting = True
            while pending or futures:
                while admitting and pending and len(futures) < concurrency:
                    if deadline is not None and self._clock() >= deadline:
                        report.deadline_reached = True
                        admitting = False
                        logger.warning("Batch deadline reached, %d item(s) not admitted", len(pending))
                        break
                    if not budget.admits():
                        report.budget_exhausted = True
                        admitting = False
                        logger.warning(
                            "Batch budget %s exhausted (spent %s), %d item(s) not admitted",
                            budget.budget, budget.spent, len(pending),
                        )
                        break
                    item = pending.popleft()
                    futures[pool.submit(self.pipeline.process, item)] = item
                if not futures:
                    break
                done, _ = wait(list(futures), return_when=FIRST_COMPLETED)
                for fut in done:
                    item = futures.pop(fut)
                    self._collect(item, fut, budget, handled, report)

        report.deferred = len(pending)
        report.total_cost = budget.spent
        report.cursor = self._advance_cursor(ordered, handled, cursor)
        self._maintain()
        report.duration_s = round(self._clock() - t0, 3)
        logger.info(
            "Batch done: fetched=%d analyzed=%d inserted=%d completed=%d rejected=%d "
            "errors=%d skipped=%d deferred=%d cost=%s in %.1fs",
            report.fetched, report.analyzed, report.inserted, report.completed, report.rejected,
            report.errors, report.skipped, report.deferred, report.total_cost, report.duration_s,
        )
        return report

    # ── Internals ───────────────────────────────────────────────

    def _select(
        self,
        ordered: List[NewsItem],
        max_items: int,
        handled: set[str],
        report: BatchReport,
    ) -> List[NewsItem]:
        """Oldest-first unanalysed, fresh items; stored and stale ones count as handled."""
        stored = self.store.existing_ids(it.id for it in ordered)
        min_published = (
            utcnow() - timedelta(seconds=self.max_news_age_s) if self.max_news_age_s > 0 else None
        )
        out: List[NewsItem] = []
        for it in ordered:
            if it.id in stored:
                handled.add(it.id)
                report.skipped += 1
            elif min_published is not None and it.published_at < min_published:
                handled.add(it.id)
                report.skipped += 1
                report.stale += 1
            elif not it.is_valid:
                handled.add(it.id)
                report.skipped += 1
            elif len(out) < max_items:
                out.append(it)
        if report.stale:
            logger.info("Skipped %d stale item(s) older than %.0fs", report.stale, self.max_news_age_s)
        return out

    def _collect(
        self,
        item: NewsItem,
        fut: Future,
        budget: BudgetCounter,
        handled: set[str],
        report: BatchReport,
    ) -> None:
        try:
            outcome: PipelineOutcome = fut.result()
        except Exception:
            logger.exception("%s: worker failed; will be retried next batch", item.id)
            report.failed += 1
            report.skipped += 1
            return
        if outcome.in_flight:
            report.skipped += 1
            return
        handled.add(item.id)
        if outcome.duplicate or outcome.record is None:
            report.skipped += 1
            return
        record = outcome.record
        report.analyzed += 1
        report.inserted += int(outcome.inserted)
        if record.status is AnalysisStatus.COMPLETED:
            report.completed += 1
        elif record.status is AnalysisStatus.REJECTED:
            report.rejected += 1
        else:
            report.errors += 1
        budget.add(record.costs.total)

    def _advance_cursor(self, ordered: List[NewsItem], handled: set[str], cursor: float) -> float:
        new_cursor = cursor
        for it in ordered:
            ts = it.published_at.timestamp()
            if it.id not in handled:
                # Never step onto the timestamp of an item still to do.
                new_cursor = min(new_cursor, math.nextafter(ts, -math.inf))
                break
            new_cursor = max(new_cursor, ts)
        new_cursor = max(new_cursor, cursor)
        if new_cursor > cursor:
            self.store.set_kv(CURSOR_KEY, repr(new_cursor))
        return new_cursor

    def _maintain(self) -> None:
        try:
            self.store.prune_claims()
            if self.max_stored_records > 0:
                self.store.prune_records(self.max_stored_records)
        except Exception:
            logger.warning("Store maintenance failed", exc_info=True)
