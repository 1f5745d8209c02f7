"""Request pipeline and the pre-call enforcement gate."""

import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence

from spendguard.core.budget import Allow, BudgetLedger, Decision, ScopeStack
from spendguard.core.calculator import CostCalculator
from spendguard.core.estimator import TokenEstimator
from spendguard.core.pricing import PricingResolver
from spendguard.utils.helpers import to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Everything the pipeline knows about one provider call before it runs.

    ``state`` is scratch space stages use to pass results downstream (the gate
    stores its decision and estimate there).
    """

    request_id: str
    provider: str
    model: str
    scopes: ScopeStack
    estimated_prompt_length: int = 0
    prompt: Optional[str] = None
    max_output_tokens: Optional[int] = None
    estimated_units: int = 1
    budget_limit: Optional[Decimal] = None
    state: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.estimated_prompt_length < 0:
            raise ValueError("estimated_prompt_length cannot be negative")
        if self.budget_limit is not None:
            object.__setattr__(self, "budget_limit", to_decimal(self.budget_limit))

    @classmethod
    def create(
        cls,
        provider: str,
        model: str,
        user_id: Any,
        project_id: Optional[Any] = None,
        organization_id: Optional[Any] = None,
        request_id: Optional[str] = None,
        **options: Any,
    ) -> "RequestContext":
        """Build a context for a user (and optional project/organization).

        Args:
            provider: Provider name
            model: Model name
            user_id: Requesting user
            project_id: Project the request belongs to, if any
            organization_id: Organization the request belongs to, if any
            request_id: Idempotency key; generated when omitted
            **options: Any other RequestContext field
        """
        return cls(
            request_id=request_id or str(uuid.uuid4()),
            provider=provider,
            model=model,
            scopes=ScopeStack.for_request(user_id, project_id, organization_id),
            **options,
        )


NextStage = Callable[[RequestContext], Any]
Stage = Callable[[RequestContext, NextStage], Any]


class Pipeline:
    """Ordered stages composed once into a fixed call chain.

    Each stage receives the context and the next stage; the last stage's next
    is the provider call passed to ``handle``.
    """

    def __init__(self, stages: Sequence[Stage]):
        self.stages = tuple(stages)
        self._chain = self._compose()

    def _compose(self) -> Callable[[RequestContext, NextStage], Any]:
        def terminal(context: RequestContext, call: NextStage) -> Any:
            return call(context)

        chain = terminal
        for stage in reversed(self.stages):
            chain = self._link(stage, chain)
        return chain

    @staticmethod
    def _link(
        stage: Stage, downstream: Callable[[RequestContext, NextStage], Any]
    ) -> Callable[[RequestContext, NextStage], Any]:
        def run(context: RequestContext, call: NextStage) -> Any:
            return stage(context, lambda ctx: downstream(ctx, call))

        return run

    def handle(self, context: RequestContext, call: NextStage) -> Any:
        """Run ``context`` through every stage, ending in ``call``."""
        return self._chain(context, call)


class GateState(str, Enum):
    RECEIVED = "received"
    ESTIMATING = "estimating"
    CHECKING = "checking"
    ALLOWED = "allowed"
    DENIED = "denied"


class EnforcementGate:
    """Pre-call stage: estimate the request cost and check it against the ledger.

    Fail-open: any error while estimating or checking allows the request and
    is logged as a warning.
    """

    def __init__(
        self,
        resolver: PricingResolver,
        calculator: CostCalculator,
        estimator: TokenEstimator,
        ledger: BudgetLedger,
        enabled: bool = True,
    ):
        self.resolver = resolver
        self.calculator = calculator
        self.estimator = estimator
        self.ledger = ledger
        self.enabled = enabled

    def estimate_cost(self, context: RequestContext) -> Decimal:
        """Estimated total cost of the request described by ``context``."""
        price = self.resolver.resolve(context.provider, context.model)
        usage = self.estimator.estimate_usage(
            context.provider,
            context.model,
            price.unit,
            prompt_length=context.estimated_prompt_length,
            prompt=context.prompt,
            max_output_tokens=context.max_output_tokens,
            estimated_units=context.estimated_units,
        )
        return self.calculator.calculate(price, usage).total_cost

    def evaluate(self, context: RequestContext) -> Decision:
        """Allow or Deny ``context``. Never raises."""
        if not self.enabled:
            return Allow()

        state = GateState.RECEIVED
        try:
            state = GateState.ESTIMATING
            estimated_cost = self.estimate_cost(context)
            context.state["estimated_cost"] = estimated_cost

            state = GateState.CHECKING
            decision = self.ledger.check(
                context.scopes,
                estimated_cost,
                per_request_override=context.budget_limit,
            )
        except Exception as e:
            logger.warning(
                "Budget check failed while %s request %s; allowing it: %s",
                state.value,
                context.request_id,
                e,
                exc_info=True,
            )
            return Allow(degraded=True)

        state = GateState.ALLOWED if decision.allowed else GateState.DENIED
        if state is GateState.DENIED:
            logger.info("Request %s denied: %s", context.request_id, decision.reason)
        else:
            logger.debug("Request %s %s", context.request_id, state.value)
        return decision

    def __call__(self, context: RequestContext, next_stage: NextStage) -> Any:
        decision = self.evaluate(context)
        context.state["decision"] = decision
        if not decision.allowed:
            return decision
        return next_stage(context)


def latency_stage(context: RequestContext, next_stage: NextStage) -> Any:
    """Log the time spent in the downstream stages."""
    started = time.perf_counter()
    try:
        return next_stage(context)
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.debug(
            "Request %s (%s/%s) downstream took %.2f ms",
            context.request_id,
            context.provider,
            context.model,
            elapsed_ms,
        )
