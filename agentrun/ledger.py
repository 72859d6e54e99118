"""
Budget Ledger for AgentRun.

WHAT THIS FILE DOES:
-------------------
Keeps the append-only record of what every external call cost, and answers
the two questions the Step Scheduler asks before each dispatch:

    1. Would this step push the EXECUTION over its own cap?
       (AgentPolicy.budget_limit_usd / budget_limit_tokens, scoped to one run)
    2. Would it push the ACCOUNT over its daily or monthly cap?
       (UserSettings.daily_budget_limit_usd / monthly_budget_limit_usd)

The two caps are independent; either one failing blocks the step.

Records are never edited or deleted. Totals are always recomputed from the
records, so two concurrent appends can never lose an update.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from .costs import BudgetStatus, build_budget_status
from .errors import InvalidArgument
from .schemas import AgentPolicy, BudgetUsageRecord, UserSettings
from .store import ExecutionStore

logger = logging.getLogger(__name__)


# =============================================================================
# VALUE TYPES
# =============================================================================

@dataclass
class UsageScope:
    """
    Which ledger records a total covers.

    A scope is a time window, a single execution, or both.
    """
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    execution_id: Optional[str] = None

    @classmethod
    def for_execution(cls, execution_id: str) -> "UsageScope":
        return cls(execution_id=execution_id)

    @classmethod
    def today(cls, now: Optional[datetime] = None) -> "UsageScope":
        now = now or datetime.now()
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return cls(since=start, until=start + timedelta(days=1))

    @classmethod
    def this_week(cls, now: Optional[datetime] = None) -> "UsageScope":
        now = now or datetime.now()
        start = now.replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(days=now.weekday())
        return cls(since=start, until=start + timedelta(days=7))

    @classmethod
    def this_month(cls, now: Optional[datetime] = None) -> "UsageScope":
        now = now or datetime.now()
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return cls(since=start, until=end)

    @classmethod
    def all_time(cls) -> "UsageScope":
        return cls()


@dataclass
class UsageTotals:
    """Aggregate of a set of ledger records."""
    tokens: int = 0
    cost_usd: Decimal = Decimal("0")
    calls: int = 0
    by_model: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "tokens": self.tokens,
            "cost_usd": str(self.cost_usd),
            "calls": self.calls,
            "by_model": {
                model: {"tokens": data["tokens"], "cost_usd": str(data["cost_usd"])}
                for model, data in self.by_model.items()
            },
        }


@dataclass
class BudgetCheck:
    """Result of one cap check."""
    allowed: bool
    scope: str                          # "execution", "daily" or "monthly"
    reason: Optional[str] = None
    spent_usd: Decimal = Decimal("0")
    limit_usd: Optional[Decimal] = None
    spent_tokens: int = 0
    limit_tokens: Optional[int] = None


def _would_exceed(spent, estimate, limit) -> bool:
    """True when the cap is already used up or the next call would pass it."""
    if limit is None:
        return False
    return spent >= limit or spent + estimate > limit


# =============================================================================
# LEDGER
# =============================================================================

class BudgetLedger:
    """
    Append-only usage ledger over an ExecutionStore.

    Usage:
        ledger = BudgetLedger(store)
        ledger.record_usage("u1", tokens_used=100, cost_usd=Decimal("0.002"), model="gpt-4o")
        ledger.total_usage("u1", UsageScope.today()).tokens
    """

    def __init__(self, store: ExecutionStore):
        self.store = store

    def record_usage(
        self,
        user_id: str,
        tokens_used: int,
        cost_usd: Decimal,
        model: Optional[str] = None,
        operation: str = "agent_step",
        execution_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> BudgetUsageRecord:
        """
        Append one usage record.

        Raises:
            InvalidArgument: Negative tokens or cost
        """
        if tokens_used < 0:
            raise InvalidArgument(f"tokens_used cannot be negative: {tokens_used}")
        cost = Decimal(str(cost_usd))
        if cost < 0:
            raise InvalidArgument(f"cost_usd cannot be negative: {cost_usd}")

        record = self.store.append_usage(BudgetUsageRecord(
            user_id=user_id,
            tokens_used=tokens_used,
            cost_usd=cost,
            model=model,
            operation=operation,
            execution_id=execution_id,
            project_id=project_id,
        ))
        logger.debug(
            f"Recorded usage for {user_id}: {tokens_used} tokens, ${cost} "
            f"({operation}, execution={execution_id})"
        )
        return record

    def total_usage(self, user_id: str, scope: Optional[UsageScope] = None) -> UsageTotals:
        """Sum tokens and cost over the records in scope."""
        scope = scope or UsageScope.all_time()
        totals = UsageTotals()
        for record in self.store.list_usage(
            user_id,
            execution_id=scope.execution_id,
            since=scope.since,
            until=scope.until,
        ):
            totals.tokens += record.tokens_used
            totals.cost_usd += record.cost_usd
            totals.calls += 1
            model = record.model or "unknown"
            entry = totals.by_model.setdefault(model, {"tokens": 0, "cost_usd": Decimal("0")})
            entry["tokens"] += record.tokens_used
            entry["cost_usd"] += record.cost_usd
        return totals

    # -------------------------------------------------------------------------
    # Caps
    # -------------------------------------------------------------------------

    def check_execution_cap(
        self,
        user_id: str,
        execution_id: str,
        policy: AgentPolicy,
        estimate_usd: Optional[Decimal] = None,
        estimate_tokens: Optional[int] = None,
    ) -> BudgetCheck:
        """Check the per-execution cap from the agent's policy."""
        estimate_usd = policy.estimated_step_cost_usd if estimate_usd is None else estimate_usd
        estimate_tokens = policy.estimated_step_tokens if estimate_tokens is None else estimate_tokens
        totals = self.total_usage(user_id, UsageScope.for_execution(execution_id))

        check = BudgetCheck(
            allowed=True,
            scope="execution",
            spent_usd=totals.cost_usd,
            limit_usd=policy.budget_limit_usd,
            spent_tokens=totals.tokens,
            limit_tokens=policy.budget_limit_tokens,
        )
        if _would_exceed(totals.cost_usd, estimate_usd, policy.budget_limit_usd):
            check.allowed = False
            check.reason = (
                f"Execution budget of ${policy.budget_limit_usd} reached "
                f"(spent ${totals.cost_usd})"
            )
        elif _would_exceed(totals.tokens, estimate_tokens, policy.budget_limit_tokens):
            check.allowed = False
            check.reason = (
                f"Execution token budget of {policy.budget_limit_tokens} reached "
                f"(used {totals.tokens})"
            )
        return check

    def check_account_cap(
        self,
        user_id: str,
        settings: UserSettings,
        estimate_usd: Decimal = Decimal("0"),
        now: Optional[datetime] = None,
    ) -> BudgetCheck:
        """Check the account-wide daily and monthly caps."""
        if settings.daily_budget_limit_usd is not None:
            daily = self.total_usage(user_id, UsageScope.today(now))
            if _would_exceed(daily.cost_usd, estimate_usd, settings.daily_budget_limit_usd):
                return BudgetCheck(
                    allowed=False,
                    scope="daily",
                    reason=(
                        f"Daily budget of ${settings.daily_budget_limit_usd} reached "
                        f"(spent ${daily.cost_usd})"
                    ),
                    spent_usd=daily.cost_usd,
                    limit_usd=settings.daily_budget_limit_usd,
                    spent_tokens=daily.tokens,
                )

        if settings.monthly_budget_limit_usd is not None:
            monthly = self.total_usage(user_id, UsageScope.this_month(now))
            if _would_exceed(monthly.cost_usd, estimate_usd, settings.monthly_budget_limit_usd):
                return BudgetCheck(
                    allowed=False,
                    scope="monthly",
                    reason=(
                        f"Monthly budget of ${settings.monthly_budget_limit_usd} reached "
                        f"(spent ${monthly.cost_usd})"
                    ),
                    spent_usd=monthly.cost_usd,
                    limit_usd=settings.monthly_budget_limit_usd,
                    spent_tokens=monthly.tokens,
                )

        return BudgetCheck(allowed=True, scope="account")

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def usage_summary(self, user_id: str, now: Optional[datetime] = None) -> dict[str, UsageTotals]:
        """Totals for today, this week, this month and all time."""
        return {
            "today": self.total_usage(user_id, UsageScope.today(now)),
            "this_week": self.total_usage(user_id, UsageScope.this_week(now)),
            "this_month": self.total_usage(user_id, UsageScope.this_month(now)),
            "all_time": self.total_usage(user_id, UsageScope.all_time()),
        }

    def budget_status(
        self,
        user_id: str,
        settings: UserSettings,
        now: Optional[datetime] = None,
    ) -> BudgetStatus:
        """Account budget position with a warning level."""
        return build_budget_status(
            daily_used=self.total_usage(user_id, UsageScope.today(now)).cost_usd,
            monthly_used=self.total_usage(user_id, UsageScope.this_month(now)).cost_usd,
            daily_limit=settings.daily_budget_limit_usd,
            monthly_limit=settings.monthly_budget_limit_usd,
        )
