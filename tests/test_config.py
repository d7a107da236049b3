"""Config: env read at instantiation, parsing fallbacks, validation."""

from __future__ import annotations

import os
import unittest
from decimal import Decimal
from unittest.mock import patch

from newsstack_ai.common_types import ModelRole
from newsstack_ai.config import Config

_VALID_ENV = {
    "SCREENING_API_KEY": "sk-screen",
    "RESEARCH_API_KEY": "pplx-research",
    "SYNTHESIS_API_KEY": "sk-synth",
    "FMP_API_KEY": "fmp-key",
}


class TestConfigEnv(unittest.TestCase):

    def test_env_var_read_at_init_not_import(self):
        with patch.dict(os.environ, {"SCREENING_MODEL": "tiny-model"}):
            cfg = Config()
        self.assertEqual(cfg.screening_model, "tiny-model")

    def test_different_instances_see_different_env(self):
        with patch.dict(os.environ, {"BATCH_MAX_ITEMS": "2"}):
            cfg_a = Config()
        with patch.dict(os.environ, {"BATCH_MAX_ITEMS": "9"}):
            cfg_b = Config()
        self.assertEqual(cfg_a.batch_max_items, 2)
        self.assertEqual(cfg_b.batch_max_items, 9)

    def test_decimal_prices(self):
        with patch.dict(os.environ, {"SYNTHESIS_OUTPUT_PRICE_PER_M": " 12.50 "}):
            cfg = Config()
        self.assertEqual(cfg.synthesis_output_price_per_m, Decimal("12.50"))

    def test_unparseable_values_fall_back_to_defaults(self):
        with patch.dict(os.environ, {
            "BATCH_MAX_COST_BUDGET": "lots",
            "BATCH_MAX_CONCURRENCY": "three",
            "MODEL_TIMEOUT_S": "",
            "ON_DEMAND_MAX_BATCH": "many",
        }):
            cfg = Config()
        self.assertEqual(cfg.on_demand_max_batch, 20)
        self.assertEqual(cfg.batch_max_cost_budget, Decimal("1.00"))
        self.assertEqual(cfg.batch_max_concurrency, 3)
        self.assertEqual(cfg.model_timeout_s, 30.0)

    def test_provider_name_normalised(self):
        with patch.dict(os.environ, {"MARKET_DATA_PROVIDER": " YFinance "}):
            self.assertEqual(Config().market_data_provider, "yfinance")

    def test_repr_hides_keys(self):
        with patch.dict(os.environ, _VALID_ENV):
            text = repr(Config())
        self.assertNotIn("sk-screen", text)
        self.assertNotIn("pplx-research", text)
        self.assertNotIn("fmp-key", text)


class TestConfigHelpers(unittest.TestCase):

    def test_endpoint_per_role(self):
        with patch.dict(os.environ, {
            "RESEARCH_BASE_URL": "https://research.test",
            "RESEARCH_API_KEY": "pplx-k",
            "RESEARCH_MODEL": "sonar-pro",
        }):
            cfg = Config()
        self.assertEqual(cfg.endpoint(ModelRole.RESEARCH), ("https://research.test", "pplx-k", "sonar-pro"))

    def test_max_output_tokens(self):
        with patch.dict(os.environ, {"RESEARCH_MAX_OUTPUT_TOKENS": "500"}):
            cfg = Config()
        self.assertEqual(cfg.max_output_tokens(ModelRole.RESEARCH), 500)
        self.assertEqual(cfg.max_output_tokens(ModelRole.SCREENING), 2000)


class TestConfigValidate(unittest.TestCase):

    def test_valid_config_has_no_problems(self):
        with patch.dict(os.environ, _VALID_ENV):
            self.assertEqual(Config().validate(), [])

    def test_missing_keys_reported_per_role(self):
        env = {k: "" for k in _VALID_ENV}
        with patch.dict(os.environ, env):
            problems = Config().validate()
        joined = "\n".join(problems)
        for role in ModelRole:
            self.assertIn(f"{role.value}: API key missing", joined)
        self.assertIn("FMP_API_KEY missing", joined)

    def test_yfinance_provider_needs_no_fmp_key(self):
        env = dict(_VALID_ENV, FMP_API_KEY="", MARKET_DATA_PROVIDER="yfinance")
        with patch.dict(os.environ, env):
            self.assertEqual(Config().validate(), [])

    def test_bad_values_reported(self):
        env = dict(
            _VALID_ENV,
            SCREENING_BASE_URL="ftp://nope",
            MODEL_BACKOFF_JITTER="1.5",
            BATCH_MAX_COST_BUDGET="-1",
            QUOTA_REQUESTS="0",
            ON_DEMAND_MAX_BATCH="0",
            MARKET_DATA_PROVIDER="bloomberg",
        )
        with patch.dict(os.environ, env):
            problems = Config().validate()
        self.assertEqual(len(problems), 6)
        self.assertIn("ON_DEMAND_MAX_BATCH must be positive", problems)


if __name__ == "__main__":
    unittest.main()
