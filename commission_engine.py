from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import List, Literal, Optional, Sequence

from errors import ExceedsCapError

QUANT = Decimal("0.000001")
MAX_LEVELS = 3


def q(amount) -> Decimal:
    """round down to 6 dp, the precision every stored amount uses."""
    return Decimal(amount).quantize(QUANT, rounding=ROUND_DOWN)


def fmt(amount: Optional[Decimal]) -> Optional[str]:
    # decimals must serialize as strings
    return None if amount is None else f"{amount:.6f}"


@dataclass(frozen=True)
class CommissionSchedule:
    """
    per-level referrer commission.
    mode "fixed": level values are token amounts.
    mode "rate":  level values are fractions of the new-user bonus.
    """

    level1: Decimal
    level2: Decimal
    level3: Decimal
    mode: Literal["fixed", "rate"] = "fixed"

    def for_level(self, level: int) -> Decimal:
        return (self.level1, self.level2, self.level3)[level - 1]


@dataclass(frozen=True)
class CommissionShare:
    referrer_address: str
    level: int
    amount: Decimal


@dataclass(frozen=True)
class DistributionAmounts:
    new_user_bonus: Decimal
    commissions: List[CommissionShare] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return self.new_user_bonus + sum((c.amount for c in self.commissions), Decimal("0"))


def compute_distribution(
    chain: Sequence[Optional[str]],
    schedule: CommissionSchedule,
    new_user_bonus: Decimal,
    max_distribution: Decimal,
) -> DistributionAmounts:
    """
    chain: [L1, L2, L3] referrer addresses, nearest first (may be shorter or
           padded with None)
    returns the bonus and one commission per populated level.
    raises ExceedsCapError instead of trimming amounts.
    """
    bonus = q(new_user_bonus)

    commissions = []
    for index, referrer in enumerate(list(chain)[:MAX_LEVELS]):
        if not referrer:
            # a gap ends the chain, nothing above it is reachable
            break
        level = index + 1
        value = schedule.for_level(level)
        amount = q(bonus * value) if schedule.mode == "rate" else q(value)
        if amount <= 0:
            continue
        commissions.append(CommissionShare(referrer, level, amount))

    result = DistributionAmounts(new_user_bonus=bonus, commissions=commissions)

    if result.total > q(max_distribution):
        raise ExceedsCapError(result.total, q(max_distribution))

    return result
