"""Prompt templates for the three model roles.

Prompts are plain ``str.format`` templates.  Article text and model output
are inserted verbatim; the system prompts pin the JSON shape the coercers
in ``schemas`` expect.
"""

from __future__ import annotations

import json
from typing import Sequence

from .common_types import NewsItem, PriceSnapshot, Stage1Result, Stage2Result

PROMPT_VERSION = "2025-06-r3"

NO_ENRICHMENT_MARKER = "NO ENRICHMENT AVAILABLE"

_MAX_ARTICLE_CHARS = 6000

SCREENING_SYSTEM = """You are a financial news analyst for short-term and swing traders.
Decide whether a news article is worth the cost of deeper research and a trade decision.
Researching a story is expensive: answer shouldDeepen=true only for news that can plausibly move a tradable asset.

Respond ONLY with a JSON object:
{
  "title": "headline for traders, max 100 chars",
  "analysisText": "your analysis of the article",
  "shouldDeepen": true or false,
  "category": "stocks|forex|crypto|commodities|indices|macro|earnings (empty when shouldDeepen is false)",
  "affectedAssets": ["NASDAQ:AAPL", "BINANCE:BTCUSDT"],
  "requiredDataRequests": [{"query": "search query", "reason": "why it matters"}]
}
Leave affectedAssets and requiredDataRequests empty when shouldDeepen is false."""

RESEARCH_SYSTEM = (
    "You are a financial research assistant. Provide factual, data-driven answers "
    "with specific numbers, dates and sources. Be concise but comprehensive and "
    "focus on trading-relevant information."
)

SYNTHESIS_SYSTEM = """You are a disciplined trader making the final call on a news-driven trade.
You do not have to trade. Block the signal (signalBlocked=true) when the information is
speculative, already priced in, or too risky to act on, and say why in blockReason.

Respond ONLY with a JSON object:
{
  "tradeDecision": "BUY|STRONG_BUY|SELL|STRONG_SELL|NO_TRADE",
  "importanceScore": 0-10,
  "signalBlocked": true or false,
  "blockReason": "reason or null",
  "wouldTrade": true or false,
  "timeHorizon": "intraday|swing|position",
  "riskMode": "conservative|normal|aggressive",
  "primaryAsset": "NASDAQ:AAPL",
  "rationale": "numbered key points"
}"""

_SCREENING_USER = """NEWS DATE: {published_at}
SOURCE: {source}
TICKERS: {tickers}

HEADLINE: {title}

ARTICLE:
{content}"""

_RESEARCH_USER = """A screening analyst flagged this news for research.

HEADLINE: {title}
PUBLISHED: {published_at}
CATEGORY: {category}
ANALYSIS: {analysis}

MARKET REACTION SINCE PUBLICATION:
{snapshots}

Answer these data requests, then summarise the likely external market impact:
{requests}"""

_SYNTHESIS_USER = """NEWS DATE: {published_at}
HEADLINE: {title}

YOUR EARLIER SCREENING:
{screening}

COLLECTED DATA:
{collected}"""


def _fmt_snapshots(snapshots: Sequence[PriceSnapshot], missing: Sequence[str] = ()) -> str:
    lines = []
    for s in snapshots:
        change = f" ({s.change_pct:+}%)" if s.change_pct is not None else ""
        lines.append(f"- {s.symbol}: {s.price}{change} as of {s.as_of.isoformat()} [{s.source}]")
    for sym in missing:
        lines.append(f"- {sym}: no market data")
    return "\n".join(lines) or "- none (no tradable symbols identified)"


def build_screening_prompt(item: NewsItem) -> str:
    return _SCREENING_USER.format(
        published_at=item.published_at.isoformat(),
        source=item.source or "unknown",
        tickers=", ".join(sorted(item.tickers)) or "none",
        title=item.title,
        content=item.content[:_MAX_ARTICLE_CHARS],
    )


def build_research_prompt(
    item: NewsItem,
    stage1: Stage1Result,
    snapshots: Sequence[PriceSnapshot],
    missing: Sequence[str] = (),
) -> str:
    requests = "\n".join(
        f"- {r.query}" + (f" ({r.reason})" if r.reason else "")
        for r in stage1.required_data_requests
    ) or "- What is the expected market impact of this news?"
    return _RESEARCH_USER.format(
        title=stage1.title or item.title,
        published_at=item.published_at.isoformat(),
        category=stage1.category.value if stage1.category else "unknown",
        analysis=stage1.analysis_text,
        snapshots=_fmt_snapshots(snapshots, missing),
        requests=requests,
    )


def build_synthesis_prompt(
    item: NewsItem,
    stage1: Stage1Result,
    stage2: Stage2Result | None,
) -> str:
    screening = json.dumps(stage1.to_dict(), indent=2, ensure_ascii=False)
    if stage2 is None:
        collected = NO_ENRICHMENT_MARKER
    else:
        research = stage2.external_impact if stage2.research_available else NO_ENRICHMENT_MARKER
        collected = (
            "MARKET REACTION:\n"
            + _fmt_snapshots(stage2.market_reaction, stage2.missing_symbols)
            + "\n\nRESEARCH:\n"
            + research
        )
    return _SYNTHESIS_USER.format(
        published_at=item.published_at.isoformat(),
        title=stage1.title or item.title,
        screening=screening,
        collected=collected,
    )
