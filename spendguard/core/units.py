"""Pricing units and billing models shared by every price source."""

from decimal import Decimal
from enum import Enum
from typing import FrozenSet


class PricingUnit(str, Enum):
    """Unit a provider charges in. Values match the stored price rows."""

    PER_TOKEN = "per_token"
    PER_1K_TOKENS = "1k_tokens"
    PER_1M_TOKENS = "1m_tokens"

    PER_CHARACTER = "per_character"
    PER_1K_CHARACTERS = "1k_characters"

    PER_SECOND = "per_second"
    PER_MINUTE = "per_minute"
    PER_HOUR = "per_hour"

    PER_REQUEST = "per_request"
    PER_IMAGE = "per_image"
    PER_AUDIO_FILE = "per_audio_file"

    PER_MB = "per_mb"
    PER_GB = "per_gb"

    @property
    def multiplier(self) -> Decimal:
        """How many raw tokens one priced unit covers.

        Only token units are rescaled; every other unit is charged as
        rate * quantity with the quantity already expressed in that unit.
        """
        return _TOKEN_MULTIPLIERS.get(self, Decimal(1))

    @property
    def is_token_based(self) -> bool:
        return self in TOKEN_UNITS

    @property
    def is_character_based(self) -> bool:
        return self in CHARACTER_UNITS

    @property
    def is_time_based(self) -> bool:
        return self in TIME_UNITS

    @property
    def is_request_based(self) -> bool:
        return self in REQUEST_UNITS

    @property
    def is_data_based(self) -> bool:
        return self in DATA_UNITS

    @property
    def requires_split_rates(self) -> bool:
        """Token units carry input+output rates; the rest carry one flat rate."""
        return self.is_token_based

    @property
    def base_unit(self) -> "PricingUnit":
        """Smallest unit of the same kind (per token, per character)."""
        return _BASE_UNITS.get(self, self)

    @property
    def base_quantity(self) -> Decimal:
        """How many base units one priced unit covers."""
        return _BASE_QUANTITIES.get(self, Decimal(1))


class BillingModel(str, Enum):
    """How a provider bills for a model."""

    PAY_PER_USE = "pay_per_use"
    TIERED = "tiered"
    SUBSCRIPTION = "subscription"
    CREDITS = "credits"
    FREE_TIER = "free_tier"
    ENTERPRISE = "enterprise"

    def is_compatible_with(self, unit: PricingUnit) -> bool:
        """Check whether this billing model can be expressed in ``unit``."""
        if self in (BillingModel.PAY_PER_USE, BillingModel.TIERED, BillingModel.ENTERPRISE):
            return True
        if self is BillingModel.CREDITS:
            return unit.is_token_based or unit.is_request_based
        if self is BillingModel.SUBSCRIPTION:
            return unit.is_time_based or unit.is_request_based
        # FREE_TIER
        return unit.is_request_based or unit.is_token_based


TOKEN_UNITS: FrozenSet[PricingUnit] = frozenset(
    {PricingUnit.PER_TOKEN, PricingUnit.PER_1K_TOKENS, PricingUnit.PER_1M_TOKENS}
)
CHARACTER_UNITS: FrozenSet[PricingUnit] = frozenset(
    {PricingUnit.PER_CHARACTER, PricingUnit.PER_1K_CHARACTERS}
)
TIME_UNITS: FrozenSet[PricingUnit] = frozenset(
    {PricingUnit.PER_SECOND, PricingUnit.PER_MINUTE, PricingUnit.PER_HOUR}
)
REQUEST_UNITS: FrozenSet[PricingUnit] = frozenset(
    {PricingUnit.PER_REQUEST, PricingUnit.PER_IMAGE, PricingUnit.PER_AUDIO_FILE}
)
DATA_UNITS: FrozenSet[PricingUnit] = frozenset({PricingUnit.PER_MB, PricingUnit.PER_GB})

_TOKEN_MULTIPLIERS = {
    PricingUnit.PER_TOKEN: Decimal(1),
    PricingUnit.PER_1K_TOKENS: Decimal(1000),
    PricingUnit.PER_1M_TOKENS: Decimal(1_000_000),
}

_BASE_UNITS = {
    PricingUnit.PER_1K_TOKENS: PricingUnit.PER_TOKEN,
    PricingUnit.PER_1M_TOKENS: PricingUnit.PER_TOKEN,
    PricingUnit.PER_1K_CHARACTERS: PricingUnit.PER_CHARACTER,
}

_BASE_QUANTITIES = {
    **_TOKEN_MULTIPLIERS,
    PricingUnit.PER_1K_CHARACTERS: Decimal(1000),
}


def convert_rate(rate: Decimal, from_unit: PricingUnit, to_unit: PricingUnit) -> Decimal:
    """Re-express a rate charged per ``from_unit`` as a rate per ``to_unit``.

    Raises:
        ValueError: If the units do not share a base unit
    """
    if from_unit is to_unit:
        return rate
    if from_unit.base_unit is not to_unit.base_unit:
        raise ValueError(f"Cannot convert a rate from {from_unit.value} to {to_unit.value}")
    return rate / from_unit.base_quantity * to_unit.base_quantity
