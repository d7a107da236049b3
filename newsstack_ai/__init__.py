"""newsstack_ai – news → trading-signal analysis pipeline.

Screens raw financial news with a cheap model, enriches the survivors
with market data and a research model, and lets a synthesis model make
the trade decision.  Every model call is billed to a per-item cost
ledger; each news id is analysed and stored exactly once (SQLite claim +
upsert).

Two entry points share one ``StagePipeline``: the cron-driven
``BatchOrchestrator`` (budget, deadline, bounded worker pool) and the
quota-bounded ``OnDemandGateway``.  See ``python -m newsstack_ai.run -h``.
"""
