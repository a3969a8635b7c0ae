from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from commission_engine import q
from logging_config import get_logger
from referral_store import ReferralStore
from transfers import TransferService

logger = get_logger(__name__)


@dataclass(frozen=True)
class TreasuryCheck:
    sufficient: bool
    remaining: Decimal


class TreasuryGate:
    """
    advisory view of the signup-bonus pool.

    remaining = min(wallet balance, pool_limit - distributed) - pending

    the check is a read, not a lock: two requests can both pass it.
    the transfer itself rejecting over-spend is the final arbiter.
    """

    def __init__(
        self,
        store: ReferralStore,
        transfers: TransferService,
        pool_limit: Optional[Decimal] = None,
    ):
        self.store = store
        self.transfers = transfers
        self.pool_limit = pool_limit

    def remaining(self) -> Decimal:
        return self._snapshot()["remaining"]

    def check_available(self, required_amount: Decimal) -> TreasuryCheck:
        remaining = self.remaining()
        check = TreasuryCheck(sufficient=remaining >= q(required_amount), remaining=remaining)
        if not check.sufficient:
            logger.warning(
                "treasury_insufficient",
                required=str(required_amount),
                remaining=str(remaining),
            )
        return check

    def status(self, per_signup: Decimal) -> Dict[str, Any]:
        snap = self._snapshot()
        remaining = snap["remaining"]
        per_signup = q(per_signup)
        return {
            "balance": snap["balance"],
            "poolLimit": self.pool_limit,
            "distributed": snap["distributed"],
            "pending": snap["pending"],
            "remaining": remaining,
            "maxPerSignup": per_signup,
            "signupsRemaining": int(remaining // per_signup) if per_signup > 0 else 0,
            "sufficient": remaining >= per_signup,
        }

    def _snapshot(self) -> Dict[str, Decimal]:
        balance = q(self.transfers.balance())
        distributed = q(self.store.distributed_total())
        pending = q(self.store.pending_total())

        available = balance
        if self.pool_limit is not None:
            available = min(available, q(self.pool_limit) - distributed)

        # pending legs already left (or may have left) the wallet but are not
        # recorded yet
        remaining = max(available - pending, Decimal("0"))
        return {
            "balance": balance,
            "distributed": distributed,
            "pending": pending,
            "remaining": q(remaining),
        }
