"""Price resolution for (provider, model) pairs.

Resolution walks an ordered fallback chain and the first tier that answers wins:

1. the persistent price store (current-dated row), cached with a TTL;
2. the static default table shipped with each provider driver;
3. a hard-coded universal fallback, deliberately expensive so that unknown
   models are over-estimated rather than slipping through cheaply.

Resolution never raises. An unreachable store is treated as "absent", and an
entry whose unit, rates and billing model do not agree is rejected and the next
tier is tried.
"""

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple

from spendguard.core.cache import TTLCache
from spendguard.core.units import BillingModel, PricingUnit, convert_rate
from spendguard.utils.helpers import to_decimal, utcnow

logger = logging.getLogger(__name__)

PriceKey = Tuple[str, str]


class PriceSource(str, Enum):
    """Which fallback tier produced a price entry."""

    DATABASE = "database"
    DRIVER_DEFAULT = "driver_default"
    UNIVERSAL_FALLBACK = "universal_fallback"


class InconsistentPriceEntryError(ValueError):
    """Raised when a price entry's unit, rates and billing model disagree."""

    def __init__(self, provider: str, model: str, errors: List[str]):
        self.provider = provider
        self.model = model
        self.errors = errors
        super().__init__(f"Invalid pricing for {provider}/{model}: {'; '.join(errors)}")


class PriceStoreUnavailableError(Exception):
    """Raised by a price store that cannot be reached."""


@dataclass(frozen=True)
class PriceEntry:
    """Cost per unit of usage for one (provider, model) pair.

    Token units carry ``input_rate`` and ``output_rate``; every other unit
    carries a single ``flat_rate``.
    """

    provider: str
    model: str
    unit: PricingUnit
    input_rate: Optional[Decimal] = None
    output_rate: Optional[Decimal] = None
    flat_rate: Optional[Decimal] = None
    currency: str = "USD"
    billing_model: BillingModel = BillingModel.PAY_PER_USE
    effective_date: Optional[date] = None
    source: PriceSource = PriceSource.DATABASE

    def with_source(self, source: PriceSource) -> "PriceEntry":
        return replace(self, source=source)

    @property
    def key(self) -> PriceKey:
        return (self.provider, self.model)


def validate_price_entry(entry: PriceEntry) -> PriceEntry:
    """Check that an entry is internally consistent.

    Args:
        entry: Entry to validate

    Returns:
        The same entry, for chaining

    Raises:
        InconsistentPriceEntryError: If any check fails
    """
    errors: List[str] = []

    if entry.unit.requires_split_rates:
        if entry.input_rate is None or entry.output_rate is None:
            errors.append(f"unit {entry.unit.value} requires input and output rates")
        if entry.flat_rate is not None:
            errors.append(f"unit {entry.unit.value} does not take a flat rate")
    else:
        if entry.flat_rate is None:
            errors.append(f"unit {entry.unit.value} requires a flat rate")
        if entry.input_rate is not None or entry.output_rate is not None:
            errors.append(f"unit {entry.unit.value} does not take input/output rates")

    for name in ("input_rate", "output_rate", "flat_rate"):
        value = getattr(entry, name)
        if value is None:
            continue
        if not isinstance(value, Decimal) or not value.is_finite():
            errors.append(f"{name} must be a finite decimal")
        elif value < 0:
            errors.append(f"{name} cannot be negative")

    if not entry.billing_model.is_compatible_with(entry.unit):
        errors.append(
            f"billing model {entry.billing_model.value} is not compatible with unit {entry.unit.value}"
        )

    if len(entry.currency) != 3 or not entry.currency.isalpha() or not entry.currency.isupper():
        errors.append(f"invalid currency code {entry.currency!r}")

    if errors:
        raise InconsistentPriceEntryError(entry.provider, entry.model, errors)
    return entry


def normalize_price(entry: PriceEntry, target_unit: PricingUnit) -> PriceEntry:
    """Express ``entry`` per ``target_unit``, e.g. per 1K tokens as per 1M tokens.

    Useful for comparing prices that providers quote in different units.

    Raises:
        ValueError: If ``target_unit`` is not of the same kind as the entry's unit
    """
    if entry.unit is target_unit:
        return entry

    def convert(rate: Optional[Decimal]) -> Optional[Decimal]:
        return None if rate is None else convert_rate(rate, entry.unit, target_unit)

    return replace(
        entry,
        unit=target_unit,
        input_rate=convert(entry.input_rate),
        output_rate=convert(entry.output_rate),
        flat_rate=convert(entry.flat_rate),
    )


def _optional_rate(data: Mapping[str, Any], name: str) -> Optional[Decimal]:
    value = data.get(name)
    if value is None:
        return None
    return to_decimal(value)


def price_entry_from_mapping(
    provider: str,
    model: str,
    data: Mapping[str, Any],
    source: PriceSource,
    default_currency: str = "USD",
) -> PriceEntry:
    """Build and validate a PriceEntry from a raw mapping.

    Accepts ``input``/``output`` for split rates and ``rate`` for flat rates, the
    layout used by ``config/pricing.json``.

    Raises:
        InconsistentPriceEntryError: If the mapping cannot form a valid entry
    """
    try:
        unit = PricingUnit(data.get("unit", PricingUnit.PER_1K_TOKENS.value))
        billing_model = BillingModel(data.get("billing_model", BillingModel.PAY_PER_USE.value))
        effective = data.get("effective_date")
        entry = PriceEntry(
            provider=provider,
            model=model,
            unit=unit,
            input_rate=_optional_rate(data, "input"),
            output_rate=_optional_rate(data, "output"),
            flat_rate=_optional_rate(data, "rate"),
            currency=data.get("currency", default_currency),
            billing_model=billing_model,
            effective_date=date.fromisoformat(effective) if isinstance(effective, str) else effective,
            source=source,
        )
    except (ValueError, TypeError, InvalidOperation) as e:
        raise InconsistentPriceEntryError(provider, model, [str(e)]) from e
    return validate_price_entry(entry)


def _default_pricing_path() -> Path:
    package_dir = Path(__file__).parent.parent
    return package_dir / "config" / "pricing.json"


class DriverPricingTable:
    """Immutable, versioned set of per-provider default price tables.

    Built once from ``config/pricing.json`` (or a dict) and injected into the
    resolver; reloading means building a new table, never mutating this one.
    """

    def __init__(
        self,
        tables: Mapping[str, Mapping[str, Mapping[str, Any]]],
        version: str = "unversioned",
        aliases: Optional[Mapping[str, str]] = None,
    ):
        self.version = version
        self._tables = MappingProxyType(
            {
                provider.lower(): MappingProxyType(
                    {model: MappingProxyType(dict(row)) for model, row in models.items()}
                )
                for provider, models in tables.items()
            }
        )
        self._aliases = MappingProxyType(dict(aliases or {}))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DriverPricingTable":
        """Build a table from the pricing.json layout."""
        return cls(
            tables=data.get("providers", {}),
            version=str(data.get("version", "unversioned")),
            aliases=data.get("model_aliases", {}),
        )

    @classmethod
    def from_file(cls, pricing_file_path: Optional[str] = None) -> "DriverPricingTable":
        """Load driver defaults from JSON.

        Args:
            pricing_file_path: Path to the pricing JSON file. If None, uses the
                packaged config/pricing.json.

        Raises:
            FileNotFoundError: If the pricing file doesn't exist.
            json.JSONDecodeError: If the pricing file is invalid JSON.
        """
        pricing_path = Path(pricing_file_path) if pricing_file_path else _default_pricing_path()
        if not pricing_path.exists():
            raise FileNotFoundError(f"Pricing file not found: {pricing_path}")

        with open(pricing_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    def resolve_model(self, model: str) -> str:
        """Resolve model aliases to canonical names."""
        return self._aliases.get(model, model)

    def lookup(self, provider: str, model: str, default_currency: str = "USD") -> Optional[PriceEntry]:
        """Return the driver default for (provider, model), or None.

        Raises:
            InconsistentPriceEntryError: If the table row is malformed
        """
        models = self._tables.get(provider.lower())
        if models is None:
            return None
        row = models.get(model) or models.get(self.resolve_model(model))
        if row is None:
            return None
        return price_entry_from_mapping(
            provider.lower(), model, row, PriceSource.DRIVER_DEFAULT, default_currency
        )

    def providers(self) -> List[str]:
        return sorted(self._tables)

    def list_models(self, provider: str) -> List[str]:
        return sorted(self._tables.get(provider.lower(), {}))


class PriceStore(Protocol):
    """Persistent price table collaborator."""

    def get_current_price(self, provider: str, model: str) -> Optional[PriceEntry]:
        ...

    def save_price(self, entry: PriceEntry) -> None:
        ...


class PricingResolver:
    """Resolves a PriceEntry for (provider, model) through the fallback chain.

    Resolved entries are cached per key. A stale entry is returned immediately
    and refreshed on the background pool; only a cold miss resolves inline.
    A fallback served because the store read failed is cached already stale,
    so the store is tried again on the next lookup.
    """

    def __init__(
        self,
        store: Optional[PriceStore] = None,
        driver_table: Optional[DriverPricingTable] = None,
        cache_ttl_seconds: float = 3600.0,
        store_timeout_seconds: Optional[float] = 0.25,
        fallback_input_rate: Decimal = Decimal("0.015"),
        fallback_output_rate: Decimal = Decimal("0.075"),
        currency: str = "USD",
        max_workers: int = 2,
        cache: Optional[TTLCache] = None,
    ):
        """Initialize the resolver.

        Args:
            store: Persistent price store (tier 1). None skips the tier.
            driver_table: Driver defaults (tier 2). Defaults to the packaged table.
            cache_ttl_seconds: Freshness window for resolved entries.
            store_timeout_seconds: Bound on a single store read; None waits.
            fallback_input_rate: Universal fallback input rate per 1K tokens.
            fallback_output_rate: Universal fallback output rate per 1K tokens.
            currency: Currency for the universal fallback.
            max_workers: Size of the pool used for refreshes and timed reads.
            cache: Pre-built cache (tests).
        """
        self.store = store
        self.driver_table = driver_table if driver_table is not None else DriverPricingTable.from_file()
        self.store_timeout_seconds = store_timeout_seconds
        self.fallback_input_rate = to_decimal(fallback_input_rate)
        self.fallback_output_rate = to_decimal(fallback_output_rate)
        self.currency = currency
        self.cache: TTLCache[PriceKey, PriceEntry] = cache or TTLCache(cache_ttl_seconds)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="spendguard-pricing")
        self._refreshing: Set[PriceKey] = set()
        self._refresh_lock = threading.Lock()

    @staticmethod
    def _key(provider: str, model: str) -> PriceKey:
        return (provider.lower(), model)

    def resolve(self, provider: str, model: str) -> PriceEntry:
        """Return a usable price entry. Never raises."""
        key = self._key(provider, model)
        cached = self.cache.peek(key)
        if cached is not None:
            if not cached.is_fresh(self.cache.now()):
                self._schedule_refresh(key)
            return cached.value

        generation = self.cache.generation(key)
        entry, store_failed = self._resolve_uncached(*key)
        self._cache_entry(key, entry, generation, store_failed)
        return entry

    def _cache_entry(self, key: PriceKey, entry: PriceEntry, generation: int, store_failed: bool) -> None:
        # A fallback chosen because the store failed is kept stale, so the
        # next lookup retries the store in the background.
        ttl = 0 if store_failed else None
        self.cache.put(key, entry, generation=generation, ttl_seconds=ttl)

    def _resolve_uncached(self, provider: str, model: str, timed: bool = True) -> Tuple[PriceEntry, bool]:
        """Walk the fallback chain.

        Returns:
            The entry and whether the store read failed
        """
        entry, store_failed = self._from_store(provider, model, timed)
        if entry is not None:
            return entry, False

        entry = self._from_driver(provider, model)
        if entry is not None:
            return entry, store_failed

        logger.debug("No pricing for %s/%s, using universal fallback", provider, model)
        return self.universal_fallback(provider, model), store_failed

    def _from_store(self, provider: str, model: str, timed: bool = True) -> Tuple[Optional[PriceEntry], bool]:
        if self.store is None:
            return None, False
        try:
            if timed:
                entry = self._read_store(provider, model)
            else:
                entry = self.store.get_current_price(provider, model)
        except Exception as e:
            logger.debug("Price store unavailable for %s/%s: %s", provider, model, e)
            return None, True
        if entry is None:
            return None, False
        try:
            return validate_price_entry(entry.with_source(PriceSource.DATABASE)), False
        except InconsistentPriceEntryError as e:
            logger.warning("Rejected stored price: %s", e)
            return None, False

    def _read_store(self, provider: str, model: str) -> Optional[PriceEntry]:
        if self.store_timeout_seconds is None:
            return self.store.get_current_price(provider, model)
        future = self._executor.submit(self.store.get_current_price, provider, model)
        try:
            return future.result(timeout=self.store_timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise TimeoutError(
                f"price store read exceeded {self.store_timeout_seconds}s"
            ) from None

    def _from_driver(self, provider: str, model: str) -> Optional[PriceEntry]:
        try:
            return self.driver_table.lookup(provider, model, default_currency=self.currency)
        except InconsistentPriceEntryError as e:
            logger.warning("Rejected driver default price: %s", e)
            return None

    def universal_fallback(self, provider: str, model: str) -> PriceEntry:
        """Conservative last-resort entry, priced per 1K tokens."""
        return PriceEntry(
            provider=provider.lower(),
            model=model,
            unit=PricingUnit.PER_1K_TOKENS,
            input_rate=self.fallback_input_rate,
            output_rate=self.fallback_output_rate,
            currency=self.currency,
            billing_model=BillingModel.PAY_PER_USE,
            effective_date=utcnow().date(),
            source=PriceSource.UNIVERSAL_FALLBACK,
        )

    def _schedule_refresh(self, key: PriceKey) -> None:
        with self._refresh_lock:
            if key in self._refreshing:
                return
            self._refreshing.add(key)
        generation = self.cache.generation(key)
        try:
            self._executor.submit(self._refresh, key, generation)
        except RuntimeError:
            # Executor already shut down.
            with self._refresh_lock:
                self._refreshing.discard(key)

    def _refresh(self, key: PriceKey, generation: int) -> None:
        try:
            # Already on the pool, so the store is read inline.
            entry, store_failed = self._resolve_uncached(*key, timed=False)
            self._cache_entry(key, entry, generation, store_failed)
        except Exception:
            logger.exception("Price refresh failed for %s/%s", *key)
        finally:
            with self._refresh_lock:
                self._refreshing.discard(key)

    def warm(self, pairs: Optional[Iterable[PriceKey]] = None) -> Dict[PriceKey, PriceEntry]:
        """Resolve ``pairs`` now and cache them, so first requests hit the cache.

        Args:
            pairs: (provider, model) pairs; every model of the driver table
                when omitted

        Returns:
            The resolved entry per key
        """
        if pairs is None:
            pairs = [
                (provider, model)
                for provider in self.driver_table.providers()
                for model in self.driver_table.list_models(provider)
            ]
        warmed: Dict[PriceKey, PriceEntry] = {}
        for provider, model in pairs:
            key = self._key(provider, model)
            generation = self.cache.generation(key)
            entry, store_failed = self._resolve_uncached(*key, timed=False)
            self._cache_entry(key, entry, generation, store_failed)
            warmed[key] = entry
        logger.info("Warmed %d price entries", len(warmed))
        return warmed

    def invalidate(self, provider: str, model: str) -> None:
        """Drop the cached entry for exactly (provider, model)."""
        self.cache.invalidate(self._key(provider, model))

    def store_price(self, entry: PriceEntry) -> PriceEntry:
        """Validate and persist a new current price, then invalidate its key.

        Raises:
            InconsistentPriceEntryError: If the entry is malformed
            ValueError: If no store is configured
        """
        if self.store is None:
            raise ValueError("No price store configured")
        entry = validate_price_entry(
            replace(entry, provider=entry.provider.lower(), source=PriceSource.DATABASE)
        )
        self.store.save_price(entry)
        self.invalidate(entry.provider, entry.model)
        return entry

    def close(self) -> None:
        """Stop the background pool."""
        self._executor.shutdown(wait=False)
