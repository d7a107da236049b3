"""Entry point: ``python -m newsstack_ai.run <command>``

Commands:
    batch          analyse the next batch of unprocessed news (cron trigger)
    analyze        on-demand analysis of one item or a JSON/JSONL file
    errors         list records that ended in status Error
    reprocess      re-run the pipeline for a stored Error record
    export         write an atomic JSON snapshot of completed signals
    check-config   validate configuration and exit

A ``.env`` file next to the package is loaded first (existing environment
variables win).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, List, Optional

from dotenv import load_dotenv

from .common_types import AnalysisStatus, MarketDataProvider, NewsSource
from .config import Config
from .errors import ConfigError, DuplicateClaim, InvalidNewsItem, QuotaExceeded
from .events import JsonlSignalSink, SignalBus, export_snapshot
from .ingest_file import JsonlNewsSource
from .ingest_fmp import FmpClient, FmpNewsSource
from .log_redaction import install_log_redaction
from .market_data import FmpMarketData, YFinanceMarketData
from .model_gateway import ModelGateway
from .normalize import normalize_request
from .on_demand import OnDemandGateway
from .orchestrator import BatchOrchestrator
from .pipeline import StagePipeline
from .quota import QuotaConfig, QuotaLimiter
from .store_sqlite import SqliteStore

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything one CLI invocation needs, wired from a ``Config``."""

    cfg: Config
    store: SqliteStore
    gateway: ModelGateway
    pipeline: StagePipeline
    bus: SignalBus
    fmp: Optional[FmpClient] = None
    _closers: List[Callable[[], None]] = field(default_factory=list)

    def close(self) -> None:
        for close in reversed(self._closers):
            try:
                close()
            except Exception:
                logger.warning("Error during shutdown", exc_info=True)


def build_runtime(cfg: Config) -> Runtime:
    problems = cfg.validate()
    if problems:
        raise ConfigError("; ".join(problems))

    store = SqliteStore(cfg.sqlite_path, claim_ttl_s=cfg.claim_ttl_s)
    gateway = ModelGateway.from_config(cfg)
    fmp = FmpClient(cfg.fmp_api_key) if cfg.fmp_api_key else None

    market_data: MarketDataProvider | None
    if cfg.market_data_provider == "yfinance":
        market_data = YFinanceMarketData()
    else:
        market_data = FmpMarketData(fmp) if fmp is not None else None

    bus = SignalBus()
    if cfg.signals_export_path:
        bus.subscribe(JsonlSignalSink(cfg.signals_export_path))

    pipeline = StagePipeline.from_config(cfg, gateway, store, market_data=market_data, bus=bus)
    closers: List[Callable[[], None]] = [store.close, gateway.close]
    if fmp is not None:
        closers.append(fmp.close)
    return Runtime(cfg=cfg, store=store, gateway=gateway, pipeline=pipeline, bus=bus, fmp=fmp, _closers=closers)


# ── Commands ────────────────────────────────────────────────────

def _dump(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def _cmd_batch(rt: Runtime, args: argparse.Namespace) -> int:
    source: NewsSource
    if args.source_file:
        source = JsonlNewsSource(args.source_file)
    elif rt.fmp is not None:
        source = FmpNewsSource(rt.fmp, page_size=rt.cfg.news_fetch_limit)
    else:
        raise ConfigError("FMP_API_KEY missing and no --source-file given")
    orch = BatchOrchestrator.from_config(rt.cfg, rt.pipeline, source)
    report = orch.run_batch(
        max_items=args.max_items,
        max_concurrency=args.concurrency,
        max_cost_budget=args.budget,
        deadline_s=args.deadline,
    )
    _dump(report.to_dict())
    return 0


def _load_items(path: str) -> List[dict]:
    text = Path(path).read_text(encoding="utf-8").strip()
    if text.startswith("["):
        return list(json.loads(text))
    if text.startswith("{") and "\n" not in text:
        return [json.loads(text)]
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def _cmd_analyze(rt: Runtime, args: argparse.Namespace) -> int:
    if args.file:
        raw = _load_items(args.file)
    else:
        raw = [{
            "id": args.id,
            "title": args.title,
            "body": args.body,
            "source": args.source,
            "published_at": args.published_at,
            "tickers": args.tickers,
            "url": args.url,
        }]
    gateway = OnDemandGateway(
        rt.pipeline,
        QuotaLimiter(QuotaConfig(rt.cfg.quota_requests, rt.cfg.quota_window_s)),
        claim_wait_s=rt.cfg.claim_wait_s,
        max_batch=rt.cfg.on_demand_max_batch,
    )
    try:
        result = gateway.analyze(args.caller, [normalize_request(d) for d in raw])
    except (QuotaExceeded, DuplicateClaim) as exc:
        logger.error("%s", exc)
        return 2
    _dump([r.to_dict() for r in result])
    return 0


def _cmd_errors(rt: Runtime, args: argparse.Namespace) -> int:
    records = rt.store.list_by_status(AnalysisStatus.ERROR, limit=args.limit)
    _dump([
        {
            "news_id": r.news_id,
            "title": r.news.title,
            "error": r.error,
            "total_cost": str(r.costs.total),
            "updated_at": r.updated_at.isoformat(),
        }
        for r in records
    ])
    return 0


def _cmd_reprocess(rt: Runtime, args: argparse.Namespace) -> int:
    status = 0
    for news_id in args.news_ids:
        try:
            record = rt.pipeline.reprocess(news_id, force=args.force)
        except (InvalidNewsItem, DuplicateClaim) as exc:
            logger.error("%s", exc)
            status = 1
            continue
        _dump({"news_id": record.news_id, "status": record.status.value, "error": record.error})
    return status


def _cmd_export(rt: Runtime, args: argparse.Namespace) -> int:
    records = rt.store.list_by_status(AnalysisStatus.COMPLETED, limit=args.limit)
    if args.actionable_only:
        records = [r for r in records if r.is_actionable]
    export_snapshot(args.out, records, {"count": len(records), "actionable_only": args.actionable_only})
    logger.info("Exported %d signal(s) to %s", len(records), args.out)
    return 0


def _decimal_arg(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a decimal: {value!r}") from None


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="newsstack_ai", description="News → trading-signal analysis pipeline")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("batch", help="Analyse the next batch of unprocessed news")
    p.add_argument("--max-items", type=int, default=None)
    p.add_argument("--concurrency", type=int, default=None)
    p.add_argument("--budget", type=_decimal_arg, default=None, help="Max batch cost (USD)")
    p.add_argument("--deadline", type=float, default=None, help="Seconds after which no item is admitted")
    p.add_argument("--source-file", default=None, help="Read news from a JSONL file instead of FMP")

    p = sub.add_parser("analyze", help="On-demand analysis")
    p.add_argument("--caller", required=True, help="Caller identity for quota accounting")
    p.add_argument("--file", default=None, help="JSON object, JSON array or JSONL file of news items")
    p.add_argument("--id", default=None)
    p.add_argument("--title", default="")
    p.add_argument("--body", default="")
    p.add_argument("--source", default="")
    p.add_argument("--published-at", default=None)
    p.add_argument("--tickers", default="", help="Comma-separated tickers")
    p.add_argument("--url", default=None)

    p = sub.add_parser("errors", help="List records with status Error")
    p.add_argument("--limit", type=int, default=50)

    p = sub.add_parser("reprocess", help="Re-run the pipeline for stored records")
    p.add_argument("news_ids", nargs="+")
    p.add_argument("--force", action="store_true", help="Also reprocess non-Error records")

    p = sub.add_parser("export", help="Write a JSON snapshot of completed signals")
    p.add_argument("--out", default="artifacts/newsstack_ai/latest_signals.json")
    p.add_argument("--limit", type=int, default=200)
    p.add_argument("--actionable-only", action="store_true")

    sub.add_parser("check-config", help="Validate configuration and exit")
    return parser.parse_args(argv)


_COMMANDS = {
    "batch": _cmd_batch,
    "analyze": _cmd_analyze,
    "errors": _cmd_errors,
    "reprocess": _cmd_reprocess,
    "export": _cmd_export,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    install_log_redaction()

    env_path = Path(__file__).resolve().parents[1] / ".env"
    if env_path.is_file():
        load_dotenv(env_path, override=False)
    cfg = Config()

    if args.command == "check-config":
        problems = cfg.validate()
        for p in problems:
            print(f"- {p}")
        if not problems:
            print("configuration OK")
        return 1 if problems else 0

    try:
        rt = build_runtime(cfg)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1
    try:
        return _COMMANDS[args.command](rt, args)
    except (ConfigError, InvalidNewsItem) as exc:
        logger.error("%s", exc)
        return 1
    finally:
        rt.close()


if __name__ == "__main__":
    sys.exit(main())
