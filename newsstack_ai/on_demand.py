"""On-demand analysis: synchronous, quota-bounded, no budget controls.

A caller submits one item or a list of up to ``max_batch`` items; the call
is charged against the caller's quota up front (one request per call), then
analysed through the same ``StagePipeline.process`` the batch uses, so a
re-submitted id returns the stored record instead of paying again.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Sequence, Union

from .common_types import AnalysisRecord, NewsItem
from .errors import DuplicateClaim, InvalidNewsItem
from .normalize import normalize_request
from .pipeline import StagePipeline
from .quota import QuotaLimiter

logger = logging.getLogger(__name__)

NewsInput = Union[NewsItem, Dict[str, Any]]


class OnDemandGateway:
    def __init__(
        self,
        pipeline: StagePipeline,
        quota: QuotaLimiter,
        *,
        claim_wait_s: float = 30.0,
        max_batch: int = 20,
        poll_interval_s: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pipeline = pipeline
        self.quota = quota
        self.claim_wait_s = claim_wait_s
        self.max_batch = max_batch
        self.poll_interval_s = poll_interval_s
        self._sleep = sleep
        self._clock = clock

    def analyze(
        self,
        caller_id: str,
        items: Union[NewsInput, Sequence[NewsInput]],
    ) -> Union[AnalysisRecord, List[AnalysisRecord]]:
        """Analyse *items* for *caller_id*.

        Returns one record for a single item, a list for a list.  Raises
        ``QuotaExceeded``, ``InvalidNewsItem`` or ``DuplicateClaim``.
        """
        single = isinstance(items, (NewsItem, dict))
        batch = [items] if single else list(items)
        if not batch:
            raise InvalidNewsItem("no news items submitted")
        if len(batch) > self.max_batch:
            raise InvalidNewsItem(f"at most {self.max_batch} items per request, got {len(batch)}")
        # Validate everything before charging quota or spending on models.
        news = [self._coerce(it) for it in batch]
        self.quota.acquire(caller_id)
        logger.info("On-demand analysis of %d item(s) for %s", len(news), caller_id)
        records = [self._analyze_one(item) for item in news]
        return records[0] if single else records

    @staticmethod
    def _coerce(item: NewsInput) -> NewsItem:
        if isinstance(item, NewsItem):
            if not item.is_valid:
                raise InvalidNewsItem(f"{item.id}: news item has neither title nor body")
            return item
        return normalize_request(item)

    def _analyze_one(self, item: NewsItem) -> AnalysisRecord:
        outcome = self.pipeline.process(item)
        if outcome.record is not None:
            return outcome.record
        # Another worker holds the claim: wait for its record to land.
        deadline = self._clock() + self.claim_wait_s
        while self._clock() < deadline:
            self._sleep(self.poll_interval_s)
            record = self.pipeline.store.get(item.id)
            if record is not None:
                return record
        raise DuplicateClaim(item.id, retry_after_s=max(self.poll_interval_s, outcome.retry_after_s))
