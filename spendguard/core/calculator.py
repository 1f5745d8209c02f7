"""Cost calculation from resolved pricing and usage quantities."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from spendguard.core.pricing import PriceEntry, PriceSource
from spendguard.core.units import PricingUnit
from spendguard.utils.helpers import DEFAULT_COST_PRECISION, quantize_cost


@dataclass(frozen=True)
class UsageRecord:
    """Usage reported by the provider call for one request.

    For token units the quantities are raw token counts. For every other unit
    they are already expressed in that unit (images, minutes, characters...).
    """

    provider: str
    model: str
    input_units: int
    output_units: int = 0

    def __post_init__(self) -> None:
        if self.input_units < 0 or self.output_units < 0:
            raise ValueError(
                f"Usage quantities cannot be negative. Got: {self.input_units}, {self.output_units}"
            )

    @property
    def total_units(self) -> int:
        return self.input_units + self.output_units


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of one request. Flat-rate units report everything in total_cost."""

    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal
    currency: str
    unit: PricingUnit
    source: PriceSource

    def __repr__(self) -> str:
        return (
            f"CostBreakdown(total_cost={self.total_cost} {self.currency}, "
            f"input={self.input_cost}, output={self.output_cost}, "
            f"unit={self.unit.value}, source={self.source.value})"
        )


class CostCalculator:
    """Pure cost arithmetic. No I/O, no pricing lookups."""

    def __init__(self, precision: int = DEFAULT_COST_PRECISION):
        """Initialize the cost calculator.

        Args:
            precision: Fractional digits kept on every cost (at least 6)
        """
        if precision < 6:
            raise ValueError("precision must keep at least 6 fractional digits")
        self.precision = precision

    def calculate(self, price: PriceEntry, usage: UsageRecord) -> CostBreakdown:
        """Calculate the cost of ``usage`` under ``price``.

        Token units: the rate is divided by the unit multiplier (1, 1K, 1M) and
        multiplied by the raw token count. Other units: rate * quantity.

        Args:
            price: Resolved price entry
            usage: Usage quantities

        Returns:
            CostBreakdown

        Raises:
            ValueError: If the entry lacks the rates its unit needs
        """
        if price.unit.is_token_based:
            if price.input_rate is None or price.output_rate is None:
                raise ValueError(f"{price.provider}/{price.model}: token unit without input/output rates")
            multiplier = price.unit.multiplier
            input_cost = self._round(price.input_rate / multiplier * usage.input_units)
            output_cost = self._round(price.output_rate / multiplier * usage.output_units)
            total_cost = input_cost + output_cost
        else:
            if price.flat_rate is None:
                raise ValueError(f"{price.provider}/{price.model}: {price.unit.value} without a flat rate")
            input_cost = output_cost = self._round(Decimal(0))
            total_cost = self._round(price.flat_rate * usage.total_units)

        return CostBreakdown(
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=total_cost,
            currency=price.currency,
            unit=price.unit,
            source=price.source,
        )

    def calculate_from_units(
        self,
        price: PriceEntry,
        input_units: int,
        output_units: int = 0,
    ) -> CostBreakdown:
        """Calculate cost from raw quantities for ``price``'s provider/model."""
        return self.calculate(
            price,
            UsageRecord(
                provider=price.provider,
                model=price.model,
                input_units=input_units,
                output_units=output_units,
            ),
        )

    def _round(self, value: Decimal) -> Decimal:
        return quantize_cost(value, self.precision)


def calculate_error_percent(estimated_cost: Decimal, actual_cost: Decimal) -> Optional[float]:
    """Estimation error in percent (positive = overestimated). None when actual is zero."""
    if actual_cost == 0:
        return None
    return float((estimated_cost - actual_cost) / actual_cost * 100)
