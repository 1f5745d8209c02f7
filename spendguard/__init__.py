"""SpendGuard - LLM Cost Enforcement and Recording Pipeline."""

__version__ = "0.1.0"

from spendguard.core.units import PricingUnit, BillingModel
from spendguard.core.pricing import (
    PriceEntry,
    PriceSource,
    DriverPricingTable,
    PricingResolver,
    InconsistentPriceEntryError,
)
from spendguard.core.calculator import CostCalculator, CostBreakdown, UsageRecord
from spendguard.core.estimator import TokenEstimator
from spendguard.core.budget import (
    Allow,
    BudgetExceededError,
    BudgetLedger,
    BudgetLimit,
    BudgetScope,
    Deny,
    PeriodType,
    ScopeStack,
    ScopeType,
)
from spendguard.core.alerts import AlertDispatcher, AlertEvent, AlertSeverity
from spendguard.core.pipeline import EnforcementGate, Pipeline, RequestContext
from spendguard.core.recorder import CostRecorded, CostRecorder, ResponseReceived
from spendguard.core.guard import SpendGuard
from spendguard.config.settings import Settings

__all__ = [
    "PricingUnit",
    "BillingModel",
    "PriceEntry",
    "PriceSource",
    "DriverPricingTable",
    "PricingResolver",
    "InconsistentPriceEntryError",
    "CostCalculator",
    "CostBreakdown",
    "UsageRecord",
    "TokenEstimator",
    "Allow",
    "BudgetExceededError",
    "BudgetLedger",
    "BudgetLimit",
    "BudgetScope",
    "Deny",
    "PeriodType",
    "ScopeStack",
    "ScopeType",
    "AlertDispatcher",
    "AlertEvent",
    "AlertSeverity",
    "EnforcementGate",
    "Pipeline",
    "RequestContext",
    "CostRecorded",
    "CostRecorder",
    "ResponseReceived",
    "SpendGuard",
    "Settings",
]
