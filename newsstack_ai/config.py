"""Global configuration for the newsstack_ai analysis pipeline.

All tunables can be overridden via environment variables: model endpoints
and per-token prices for each model role, batch limits, retry/backoff
parameters, request timeout, quota window and store paths.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from .common_types import ModelRole


def _env_float(key: str, default: float) -> float:
    """Read an env var as float, returning *default* on parse failure."""
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_int(key: str, default: int) -> int:
    """Read an env var as int, returning *default* on parse failure."""
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_decimal(key: str, default: str) -> Decimal:
    """Read an env var as Decimal, returning *default* on parse failure."""
    try:
        return Decimal(os.getenv(key, default).strip())
    except (InvalidOperation, AttributeError):
        return Decimal(default)


_OPENAI_URL = "https://api.openai.com/v1"
_PERPLEXITY_URL = "https://api.perplexity.ai"


@dataclass(frozen=True)
class Config:
    """Central configuration – one instance per process.

    Environment variables are read at **instantiation** time (not module
    import time) so callers can set them programmatically before
    creating a ``Config``.
    """

    # ── Model endpoints (OpenAI-compatible chat-completions) ────
    screening_base_url: str = field(default_factory=lambda: os.getenv("SCREENING_BASE_URL", _OPENAI_URL))
    screening_api_key: str = field(default_factory=lambda: os.getenv("SCREENING_API_KEY", ""), repr=False)
    screening_model: str = field(default_factory=lambda: os.getenv("SCREENING_MODEL", "gpt-4o-mini"))

    research_base_url: str = field(default_factory=lambda: os.getenv("RESEARCH_BASE_URL", _PERPLEXITY_URL))
    research_api_key: str = field(default_factory=lambda: os.getenv("RESEARCH_API_KEY", ""), repr=False)
    research_model: str = field(default_factory=lambda: os.getenv("RESEARCH_MODEL", "sonar"))

    synthesis_base_url: str = field(default_factory=lambda: os.getenv("SYNTHESIS_BASE_URL", _OPENAI_URL))
    synthesis_api_key: str = field(default_factory=lambda: os.getenv("SYNTHESIS_API_KEY", ""), repr=False)
    synthesis_model: str = field(default_factory=lambda: os.getenv("SYNTHESIS_MODEL", "gpt-4o"))

    # ── Prices (USD per million tokens; request fee per call) ───
    screening_input_price_per_m: Decimal = field(default_factory=lambda: _env_decimal("SCREENING_INPUT_PRICE_PER_M", "1.00"))
    screening_output_price_per_m: Decimal = field(default_factory=lambda: _env_decimal("SCREENING_OUTPUT_PRICE_PER_M", "5.00"))
    research_input_price_per_m: Decimal = field(default_factory=lambda: _env_decimal("RESEARCH_INPUT_PRICE_PER_M", "1.00"))
    research_output_price_per_m: Decimal = field(default_factory=lambda: _env_decimal("RESEARCH_OUTPUT_PRICE_PER_M", "1.00"))
    research_request_fee: Decimal = field(default_factory=lambda: _env_decimal("RESEARCH_REQUEST_FEE", "0.005"))
    synthesis_input_price_per_m: Decimal = field(default_factory=lambda: _env_decimal("SYNTHESIS_INPUT_PRICE_PER_M", "3.00"))
    synthesis_output_price_per_m: Decimal = field(default_factory=lambda: _env_decimal("SYNTHESIS_OUTPUT_PRICE_PER_M", "15.00"))

    # ── Output token caps per role ──────────────────────────────
    screening_max_output_tokens: int = field(default_factory=lambda: _env_int("SCREENING_MAX_OUTPUT_TOKENS", 2000))
    research_max_output_tokens: int = field(default_factory=lambda: _env_int("RESEARCH_MAX_OUTPUT_TOKENS", 800))
    synthesis_max_output_tokens: int = field(default_factory=lambda: _env_int("SYNTHESIS_MAX_OUTPUT_TOKENS", 2000))

    # ── Retry / backoff / timeout ───────────────────────────────
    model_timeout_s: float = field(default_factory=lambda: _env_float("MODEL_TIMEOUT_S", 30.0))
    model_max_retries: int = field(default_factory=lambda: _env_int("MODEL_MAX_RETRIES", 2))
    model_backoff_base_s: float = field(default_factory=lambda: _env_float("MODEL_BACKOFF_BASE_S", 0.5))
    model_backoff_factor: float = field(default_factory=lambda: _env_float("MODEL_BACKOFF_FACTOR", 2.0))
    model_backoff_jitter: float = field(default_factory=lambda: _env_float("MODEL_BACKOFF_JITTER", 0.2))
    model_retry_after_cap_s: float = field(default_factory=lambda: _env_float("MODEL_RETRY_AFTER_CAP_S", 60.0))

    # ── Batch defaults ──────────────────────────────────────────
    batch_max_items: int = field(default_factory=lambda: _env_int("BATCH_MAX_ITEMS", 5))
    batch_max_concurrency: int = field(default_factory=lambda: _env_int("BATCH_MAX_CONCURRENCY", 3))
    batch_max_cost_budget: Decimal = field(default_factory=lambda: _env_decimal("BATCH_MAX_COST_BUDGET", "1.00"))
    batch_deadline_s: float = field(default_factory=lambda: _env_float("BATCH_DEADLINE_S", 240.0))
    # Items older than this are skipped by batch runs.  0 disables the check.
    max_news_age_s: float = field(default_factory=lambda: _env_float("MAX_NEWS_AGE_S", 3600.0))

    # ── On-demand quota ─────────────────────────────────────────
    quota_requests: int = field(default_factory=lambda: _env_int("QUOTA_REQUESTS", 10))
    quota_window_s: float = field(default_factory=lambda: _env_float("QUOTA_WINDOW_S", 60.0))
    claim_wait_s: float = field(default_factory=lambda: _env_float("CLAIM_WAIT_S", 30.0))
    on_demand_max_batch: int = field(default_factory=lambda: _env_int("ON_DEMAND_MAX_BATCH", 20))

    # ── State ───────────────────────────────────────────────────
    sqlite_path: str = field(default_factory=lambda: os.getenv("SQLITE_PATH", "newsstack_ai/state.db"))
    claim_ttl_s: float = field(default_factory=lambda: _env_float("CLAIM_TTL_S", 600.0))
    max_stored_records: int = field(default_factory=lambda: _env_int("MAX_STORED_RECORDS", 10000))

    # ── Sources ─────────────────────────────────────────────────
    fmp_api_key: str = field(default_factory=lambda: os.getenv("FMP_API_KEY", ""), repr=False)
    market_data_provider: str = field(default_factory=lambda: os.getenv("MARKET_DATA_PROVIDER", "fmp").strip().lower())
    news_fetch_limit: int = field(default_factory=lambda: _env_int("NEWS_FETCH_LIMIT", 50))

    # ── Export ──────────────────────────────────────────────────
    signals_export_path: str = field(default_factory=lambda: os.getenv(
        "SIGNALS_EXPORT_PATH", "artifacts/newsstack_ai/signals.jsonl",
    ))

    # ── Derived helpers ─────────────────────────────────────────

    def endpoint(self, role: ModelRole) -> tuple[str, str, str]:
        """Return ``(base_url, api_key, model)`` for *role*."""
        prefix = role.value
        return (
            getattr(self, f"{prefix}_base_url"),
            getattr(self, f"{prefix}_api_key"),
            getattr(self, f"{prefix}_model"),
        )

    def max_output_tokens(self, role: ModelRole) -> int:
        return int(getattr(self, f"{role.value}_max_output_tokens"))

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty when valid)."""
        problems: list[str] = []
        for role in ModelRole:
            base_url, api_key, model = self.endpoint(role)
            if not base_url.startswith(("http://", "https://")):
                problems.append(f"{role.value}: base URL must be http(s), got {base_url!r}")
            if not api_key:
                problems.append(f"{role.value}: API key missing ({role.value.upper()}_API_KEY)")
            if not model:
                problems.append(f"{role.value}: model name missing")
            if self.max_output_tokens(role) <= 0:
                problems.append(f"{role.value}: max output tokens must be positive")
        prices = {
            "screening_input_price_per_m": self.screening_input_price_per_m,
            "screening_output_price_per_m": self.screening_output_price_per_m,
            "research_input_price_per_m": self.research_input_price_per_m,
            "research_output_price_per_m": self.research_output_price_per_m,
            "research_request_fee": self.research_request_fee,
            "synthesis_input_price_per_m": self.synthesis_input_price_per_m,
            "synthesis_output_price_per_m": self.synthesis_output_price_per_m,
        }
        for name, value in prices.items():
            if value < 0:
                problems.append(f"{name} must be >= 0, got {value}")
        if self.model_timeout_s <= 0:
            problems.append("MODEL_TIMEOUT_S must be positive")
        if self.model_max_retries < 0:
            problems.append("MODEL_MAX_RETRIES must be >= 0")
        if not (0.0 <= self.model_backoff_jitter < 1.0):
            problems.append("MODEL_BACKOFF_JITTER must be in [0, 1)")
        if self.batch_max_items <= 0:
            problems.append("BATCH_MAX_ITEMS must be positive")
        if self.batch_max_concurrency <= 0:
            problems.append("BATCH_MAX_CONCURRENCY must be positive")
        if self.batch_max_cost_budget < 0:
            problems.append("BATCH_MAX_COST_BUDGET must be >= 0")
        if self.quota_requests <= 0 or self.quota_window_s <= 0:
            problems.append("QUOTA_REQUESTS and QUOTA_WINDOW_S must be positive")
        if self.on_demand_max_batch <= 0:
            problems.append("ON_DEMAND_MAX_BATCH must be positive")
        if self.market_data_provider not in ("fmp", "yfinance"):
            problems.append(
                f"MARKET_DATA_PROVIDER must be 'fmp' or 'yfinance', got {self.market_data_provider!r}"
            )
        if self.market_data_provider == "fmp" and not self.fmp_api_key:
            problems.append("FMP_API_KEY missing (required by the FMP market-data provider)")
        return problems
