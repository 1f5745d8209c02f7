"""Usage estimation for the pre-request budget check."""

import logging
from typing import Dict, Optional

from spendguard.core.calculator import UsageRecord
from spendguard.core.units import PricingUnit

logger = logging.getLogger(__name__)


class TokenEstimator:
    """Estimates token counts before the provider has reported real usage."""

    def __init__(
        self,
        estimation_mode: str = "heuristic",
        chars_per_token: int = 4,
        output_ratio: float = 0.6,
    ):
        """Initialize the token estimator.

        Args:
            estimation_mode: "tiktoken" or "heuristic"
            chars_per_token: Characters per token for the heuristic
            output_ratio: Predicted output tokens as a fraction of input tokens
        """
        if estimation_mode not in ("tiktoken", "heuristic"):
            raise ValueError(f"Unknown estimation mode: {estimation_mode}")
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.estimation_mode = estimation_mode
        self.chars_per_token = chars_per_token
        self.output_ratio = output_ratio
        self._encoders: Dict[str, object] = {}

    def estimate_tokens(self, text: str, model: str) -> int:
        """Estimate token count for text.

        Args:
            text: Input text to estimate
            model: Model name (used for tiktoken encoding)

        Returns:
            Estimated token count
        """
        if not text:
            return 0

        if self.estimation_mode == "tiktoken":
            try:
                return self._estimate_with_tiktoken(text, model)
            except Exception as e:
                logger.warning(
                    "Tiktoken estimation failed for model %s: %s. Falling back to heuristic.",
                    model,
                    e,
                )
        return self.tokens_from_length(len(text))

    def tokens_from_length(self, length: int) -> int:
        """Heuristic token count from a character length (at least 1 for non-empty)."""
        if length <= 0:
            return 0
        return max(1, -(-length // self.chars_per_token))

    def _estimate_with_tiktoken(self, text: str, model: str) -> int:
        import tiktoken

        if model not in self._encoders:
            try:
                self._encoders[model] = tiktoken.encoding_for_model(model)
            except KeyError:
                logger.info("Model %s not recognized by tiktoken, using cl100k_base encoding", model)
                self._encoders[model] = tiktoken.get_encoding("cl100k_base")

        encoder = self._encoders[model]
        return len(encoder.encode(text))

    def estimate_usage(
        self,
        provider: str,
        model: str,
        unit: PricingUnit,
        prompt_length: int = 0,
        prompt: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        estimated_units: int = 1,
    ) -> UsageRecord:
        """Build an approximate UsageRecord for a request that has not run yet.

        Token units: input from the prompt text (or its length), output from
        ``max_output_tokens`` or ``input * output_ratio``. Other units:
        ``estimated_units`` of the priced unit.
        """
        if not unit.is_token_based:
            return UsageRecord(provider=provider, model=model, input_units=max(0, estimated_units))

        if prompt is not None:
            input_tokens = self.estimate_tokens(prompt, model)
        else:
            input_tokens = self.tokens_from_length(prompt_length)

        if max_output_tokens is not None:
            output_tokens = max(0, max_output_tokens)
        else:
            output_tokens = int(input_tokens * self.output_ratio)

        return UsageRecord(
            provider=provider,
            model=model,
            input_units=input_tokens,
            output_units=output_tokens,
        )
