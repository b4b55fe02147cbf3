import re
from dataclasses import dataclass, field
from typing import Iterable, Optional


@dataclass(frozen=True)
class BudgetUsage:
    account: str
    year: int
    month: int
    target_cents: int
    used_cents: int

    @property
    def available_cents(self) -> int:
        return self.target_cents - self.used_cents


@dataclass(frozen=True)
class SettlementSuggestion:
    from_account: str
    to_account: str
    amount_cents: int
    reason: str

    def as_dict(self) -> dict[str, object]:
        return {
            "from_account": self.from_account,
            "to_account": self.to_account,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
        }


@dataclass
class SettlementPlan:
    suggestions: list[SettlementSuggestion] = field(default_factory=list)
    total_surplus_cents: int = 0
    total_deficit_cents: int = 0
    balanced: bool = True

    def summary(self) -> dict[str, object]:
        return {
            "total_surplus_cents": self.total_surplus_cents,
            "total_deficit_cents": self.total_deficit_cents,
            "balanced": self.balanced,
        }


def plan_settlement(
    budgets: Iterable[BudgetUsage], *, balanced_threshold_cents: int = 100
) -> SettlementPlan:
    """
    Pair overspent accounts with under-budget accounts.

    Overspent accounts ("surplus", available < 0) are served largest shortfall
    first, each drawing from accounts with spare budget ("deficit",
    available > 0) largest capacity first. The matching is greedy and does not
    minimise the number of transfers; ties keep the input order.
    """
    shortfalls: list[tuple[str, int]] = []
    capacities: list[tuple[str, int]] = []
    for budget in budgets:
        available = budget.available_cents
        if available < 0:
            shortfalls.append((budget.account, -available))
        elif available > 0:
            capacities.append((budget.account, available))

    shortfalls.sort(key=lambda item: item[1], reverse=True)
    capacities.sort(key=lambda item: item[1], reverse=True)

    remaining_capacity = [amount for _, amount in capacities]
    suggestions: list[SettlementSuggestion] = []
    for to_account, shortfall in shortfalls:
        remaining = shortfall
        for idx, (from_account, _) in enumerate(capacities):
            if remaining <= 0:
                break
            if remaining_capacity[idx] <= 0:
                continue
            amount = min(remaining, remaining_capacity[idx])
            suggestions.append(
                SettlementSuggestion(
                    from_account=from_account,
                    to_account=to_account,
                    amount_cents=amount,
                    reason=f"cover {to_account} budget overage",
                )
            )
            remaining -= amount
            remaining_capacity[idx] -= amount

    total_surplus = sum(amount for _, amount in shortfalls)
    total_deficit = sum(amount for _, amount in capacities)
    return SettlementPlan(
        suggestions=suggestions,
        total_surplus_cents=total_surplus,
        total_deficit_cents=total_deficit,
        balanced=abs(total_surplus - total_deficit) < balanced_threshold_cents,
    )


_TO_ACCOUNT_PATTERNS = (
    re.compile(r"transfer to (.+?) \(rebalance: \d+\)"),
    re.compile(r"transfer to (.+)"),
    re.compile(r"(.+?)로\s*이체"),
)


def extract_to_account(memo: Optional[str]) -> Optional[str]:
    if not memo:
        return None
    for pattern in _TO_ACCOUNT_PATTERNS:
        match = pattern.search(memo)
        if match:
            return match.group(1).strip()
    return memo


def parse_item_key(key: str) -> Optional[tuple[str, str, int]]:
    """Split "from-to-amount"; the from account may itself contain dashes."""
    parts = key.split("-")
    if len(parts) < 3:
        return None
    try:
        amount = int(parts[-1])
    except ValueError:
        return None
    from_account = "-".join(parts[:-2])
    to_account = parts[-2]
    if not from_account or not to_account:
        return None
    return from_account, to_account, amount
