"""Waterfall allocation of one income amount across a user's rules.

Rules are consumed in ascending priority. Each one claims a percentage of the
original income or a fixed amount, and is clamped to whatever is still left.
A trailing ``percent`` rule of exactly 100 takes the remainder instead of the
full income. Nothing here touches the database.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Protocol

PERCENT = "percent"


class RuleLike(Protocol):
    id: Optional[int]
    account_id: int
    category: str
    rule_type: str
    value: float
    priority: int
    active: bool


@dataclass(frozen=True)
class RuleSnapshot:
    id: Optional[int]
    account_id: int
    category: str
    rule_type: str
    value: float
    priority: int = 0
    active: bool = True


@dataclass(frozen=True)
class AllocationLine:
    rule_id: Optional[int]
    account_id: int
    category: str
    amount: float

    def as_dict(self) -> dict[str, object]:
        return {
            "rule_id": self.rule_id,
            "account_id": self.account_id,
            "category": self.category,
            "amount": self.amount,
        }


def _round_half_up(value: float) -> float:
    if not math.isfinite(value):
        # inf and nan pass through unrounded
        return value
    # Decimal(float) is exact, so only the quantize step rounds
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_cents(value: float) -> float:
    return _round_half_up(value * 100) / 100


def round_whole(value: float) -> float:
    return _round_half_up(value)


def ordered_rules(rules: Iterable[RuleLike]) -> list[RuleLike]:
    """Active rules by ascending priority; equal priorities keep input order."""
    return sorted((r for r in rules if r.active), key=lambda r: r.priority)


def allocate(income: float, rules: Iterable[RuleLike]) -> list[AllocationLine]:
    ordered = ordered_rules(rules)
    remaining = income
    lines: list[AllocationLine] = []

    last_index = len(ordered) - 1
    for index, rule in enumerate(ordered):
        if rule.rule_type == PERCENT:
            amount = round_cents(income * rule.value / 100)
        else:
            amount = rule.value

        if index == last_index and rule.rule_type == PERCENT and rule.value == 100:
            amount = max(0.0, remaining)

        amount = min(amount, max(0.0, remaining))

        lines.append(
            AllocationLine(
                rule_id=rule.id,
                account_id=rule.account_id,
                category=rule.category,
                amount=amount,
            )
        )
        remaining -= amount

    return lines


def total_allocated(lines: Iterable[AllocationLine]) -> float:
    return sum(line.amount for line in lines)
