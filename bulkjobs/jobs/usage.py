"""Usage records and cost estimation for billing reconciliation."""

import math
from typing import Dict, Optional, Tuple

from pydantic import BaseModel

# USD per million tokens (input, output)
MODEL_PRICING_PER_MTOK: Dict[str, Tuple[float, float]] = {
    "gpt-5.2": (1.75, 14.00),
    "gpt-5.1": (1.25, 10.00),
    "gpt-5-mini": (0.25, 2.00),
    "claude-opus-4-5": (5.00, 25.00),
    "claude-sonnet-4-5": (3.00, 15.00),
    "claude-haiku-4-5": (1.00, 5.00),
    "gemini-3-pro": (2.00, 12.00),
    "gemini-2.5-pro": (1.25, 10.00),
    "gemini-2.5-flash": (0.075, 0.30),
    "llama-3.3-70b-versatile": (0.59, 0.79),
}
DEFAULT_PRICING_PER_MTOK = (1.00, 5.00)


class UsageRecord(BaseModel):
    user_id: Optional[str] = None
    job_id: str
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    rows_processed: int = 0
    cost_usd: float = 0.0
    credits: int = 0
    source: str = "bulk_job"


def estimate_cost_usd(model: str, input_tokens: int, output_tokens: int) -> float:
    in_price, out_price = MODEL_PRICING_PER_MTOK.get(
        model.lower().strip(), DEFAULT_PRICING_PER_MTOK
    )
    cost = (input_tokens * in_price + output_tokens * out_price) / 1_000_000
    return round(cost, 6)


def credits_for_tokens(tokens: int) -> int:
    """One credit per thousand tokens, rounded up."""
    return math.ceil(tokens * 0.001)


def build_usage_record(
    *,
    job_id: str,
    user_id: Optional[str],
    provider: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
    rows_processed: int,
) -> UsageRecord:
    return UsageRecord(
        user_id=user_id,
        job_id=job_id,
        provider=provider,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        rows_processed=rows_processed,
        cost_usd=estimate_cost_usd(model, input_tokens, output_tokens),
        credits=credits_for_tokens(input_tokens + output_tokens),
    )
