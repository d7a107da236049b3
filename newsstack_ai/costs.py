"""Cost ledger: token usage → monetary cost per model role.

All arithmetic is ``Decimal``.  Each role's cost is recomputed from its
cumulative token counters on every ``add_usage`` call (never summed from
rounded partials), and the record total is the sum of the three role
costs quantised to 10 decimal places.  ``verify_costs`` enforces that
invariant before anything is persisted.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Mapping

from .common_types import CostLine, Costs, ModelRole, Usage
from .errors import CostInvariantError

COST_QUANTUM = Decimal("1e-10")
_MILLION = Decimal(1_000_000)


def quantize_cost(value: Decimal) -> Decimal:
    """Round *value* to the stored precision (10 dp, banker's rounding)."""
    return value.quantize(COST_QUANTUM, rounding=ROUND_HALF_EVEN)


def total_of(screening: Decimal, research: Decimal, synthesis: Decimal) -> Decimal:
    return quantize_cost(screening + research + synthesis)


def verify_costs(costs: Costs) -> None:
    """Raise ``CostInvariantError`` if ``costs.total`` ≠ sum of lines."""
    expected = total_of(costs.screening.cost, costs.research.cost, costs.synthesis.cost)
    if costs.total != expected:
        raise CostInvariantError(
            f"cost total {costs.total} diverges from sum of lines {expected}"
        )


@dataclass(frozen=True)
class RolePrice:
    input_price_per_token: Decimal
    output_price_per_token: Decimal
    request_fee: Decimal = Decimal("0")

    @classmethod
    def per_million(
        cls,
        input_per_m: Decimal | str,
        output_per_m: Decimal | str,
        request_fee: Decimal | str = "0",
    ) -> RolePrice:
        return cls(
            input_price_per_token=Decimal(str(input_per_m)) / _MILLION,
            output_price_per_token=Decimal(str(output_per_m)) / _MILLION,
            request_fee=Decimal(str(request_fee)),
        )

    def cost(self, input_tokens: int, output_tokens: int, requests: int) -> Decimal:
        return quantize_cost(
            input_tokens * self.input_price_per_token
            + output_tokens * self.output_price_per_token
            + requests * self.request_fee
        )


class PriceTable:
    """Static ``role → RolePrice`` mapping.  Missing roles cost nothing."""

    def __init__(self, prices: Mapping[ModelRole, RolePrice]) -> None:
        self._prices = dict(prices)

    @classmethod
    def from_config(cls, cfg) -> PriceTable:
        return cls({
            ModelRole.SCREENING: RolePrice.per_million(
                cfg.screening_input_price_per_m, cfg.screening_output_price_per_m,
            ),
            ModelRole.RESEARCH: RolePrice.per_million(
                cfg.research_input_price_per_m, cfg.research_output_price_per_m,
                cfg.research_request_fee,
            ),
            ModelRole.SYNTHESIS: RolePrice.per_million(
                cfg.synthesis_input_price_per_m, cfg.synthesis_output_price_per_m,
            ),
        })

    def price_for(self, role: ModelRole) -> RolePrice:
        return self._prices.get(role, RolePrice(Decimal("0"), Decimal("0")))


class CostLedger:
    """Accumulates usage for one analysed item.

    Thread-safe so a stage could fan calls out, although the pipeline
    itself calls stages sequentially.
    """

    def __init__(self, prices: PriceTable) -> None:
        self._prices = prices
        self._lock = threading.Lock()
        self._lines: dict[ModelRole, CostLine] = {role: CostLine() for role in ModelRole}

    def add_usage(self, role: ModelRole, usage: Usage, *, requests: int = 1) -> CostLine:
        """Record one call's *usage* for *role*; return the updated line."""
        price = self._prices.price_for(role)
        with self._lock:
            prev = self._lines[role]
            in_tok = prev.input_tokens + max(int(usage.input_tokens), 0)
            out_tok = prev.output_tokens + max(int(usage.output_tokens), 0)
            n_req = prev.request_count + max(int(requests), 0)
            line = CostLine(
                input_tokens=in_tok,
                output_tokens=out_tok,
                request_count=n_req,
                cost=price.cost(in_tok, out_tok, n_req),
            )
            self._lines[role] = line
            return line

    def line(self, role: ModelRole) -> CostLine:
        with self._lock:
            return self._lines[role]

    def total(self) -> Decimal:
        with self._lock:
            return total_of(*(self._lines[r].cost for r in ModelRole))

    def snapshot(self) -> Costs:
        with self._lock:
            screening = self._lines[ModelRole.SCREENING]
            research = self._lines[ModelRole.RESEARCH]
            synthesis = self._lines[ModelRole.SYNTHESIS]
        costs = Costs(
            screening=screening,
            research=research,
            synthesis=synthesis,
            total=total_of(screening.cost, research.cost, synthesis.cost),
        )
        verify_costs(costs)
        return costs
