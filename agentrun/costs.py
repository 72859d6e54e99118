"""
Pricing and budget status for AgentRun.
Turns token usage into dollar cost and usage into a warning level.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from pydantic import BaseModel


# Cost per 1K tokens, keyed by model-name prefix (longest prefix wins)
COST_TABLE = {
    "claude": {
        "input": Decimal("0.003"),
        "output": Decimal("0.015"),
    },
    "gpt-4o-mini": {
        "input": Decimal("0.00015"),
        "output": Decimal("0.0006"),
    },
    "gpt-4o": {
        "input": Decimal("0.005"),
        "output": Decimal("0.015"),
    },
    "deepseek": {
        "input": Decimal("0"),     # Local = free
        "output": Decimal("0"),
    },
    "llama": {
        "input": Decimal("0"),
        "output": Decimal("0"),
    },
}

DEFAULT_COST = {
    "input": Decimal("0.0015"),
    "output": Decimal("0.002"),
}

COST_QUANTUM = Decimal("0.000001")

# Percent-of-limit thresholds for the warning levels
WARNING_THRESHOLDS = (
    (Decimal("90"), "high"),
    (Decimal("75"), "medium"),
    (Decimal("50"), "low"),
)


def get_rates(model: Optional[str]) -> dict[str, Decimal]:
    """Look up per-1K rates for a model name."""
    if not model:
        return DEFAULT_COST
    name = model.lower()
    for prefix in sorted(COST_TABLE, key=len, reverse=True):
        if name.startswith(prefix):
            return COST_TABLE[prefix]
    return DEFAULT_COST


def estimate_cost(model: Optional[str], input_tokens: int, output_tokens: int) -> Decimal:
    """Dollar cost of one call. Negative token counts are treated as zero."""
    rates = get_rates(model)
    cost = (
        Decimal(max(input_tokens, 0)) / 1000 * rates["input"]
        + Decimal(max(output_tokens, 0)) / 1000 * rates["output"]
    )
    return cost.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


class BudgetStatus(BaseModel):
    """Account-wide budget position for a user."""
    daily_limit: Optional[Decimal] = None
    monthly_limit: Optional[Decimal] = None
    daily_used: Decimal = Decimal("0")
    monthly_used: Decimal = Decimal("0")
    daily_remaining: Optional[Decimal] = None
    monthly_remaining: Optional[Decimal] = None
    is_over_daily_limit: bool = False
    is_over_monthly_limit: bool = False
    warning_level: str = "none"  # none, low, medium, high, exceeded


def warning_level(used: Decimal, limit: Optional[Decimal]) -> str:
    """Warning level for one limit."""
    if limit is None:
        return "none"
    if used >= limit:
        return "exceeded"
    if limit == 0:
        return "none"
    percent = used / limit * 100
    for threshold, level in WARNING_THRESHOLDS:
        if percent >= threshold:
            return level
    return "none"


def build_budget_status(
    daily_used: Decimal,
    monthly_used: Decimal,
    daily_limit: Optional[Decimal],
    monthly_limit: Optional[Decimal],
) -> BudgetStatus:
    """Combine usage and limits into a BudgetStatus."""
    status = BudgetStatus(
        daily_limit=daily_limit,
        monthly_limit=monthly_limit,
        daily_used=daily_used,
        monthly_used=monthly_used,
    )

    if daily_limit is not None:
        status.daily_remaining = max(Decimal("0"), daily_limit - daily_used)
        status.is_over_daily_limit = daily_used >= daily_limit

    if monthly_limit is not None:
        status.monthly_remaining = max(Decimal("0"), monthly_limit - monthly_used)
        status.is_over_monthly_limit = monthly_used >= monthly_limit

    order = ["none", "low", "medium", "high", "exceeded"]
    levels = [warning_level(daily_used, daily_limit), warning_level(monthly_used, monthly_limit)]
    status.warning_level = max(levels, key=order.index)
    return status
