"""
signup-bonus distribution.

one call pays the new-user bonus and the referrer commissions of one signup:

    idempotency -> eligibility -> chain -> amounts -> treasury -> transfers -> records

transfers are independent external calls, so a call can end half-paid.
that is a normal outcome: it is reported, and calling again pays only the
legs that have no record yet.
"""

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from click_tracker import ClickTracker
from commission_engine import CommissionSchedule, DistributionAmounts, compute_distribution, fmt, q
from errors import (
    ExceedsCapError,
    NotEligibleError,
    TransferError,
    TransferTimeoutError,
    TreasuryExhaustedError,
)
from logging_config import get_logger
from referral_engine import get_lineage, normalize_wallet
from referral_store import (
    AlreadyExists,
    CommissionRecord,
    DistributionAttempt,
    DistributionPlan,
    PendingLeg,
    PlannedLeg,
    ReferralStore,
    SignupBonusRecord,
    utcnow,
)
from transfers import TransferService
from treasury import TreasuryGate

logger = get_logger(__name__)

BONUS_LEVEL = 0


def leg_reference(wallet: str, level: int) -> str:
    suffix = "bonus" if level == BONUS_LEVEL else f"l{level}"
    return f"signup:{wallet}:{suffix}"


@dataclass
class LegResult:
    reference: str
    recipient: str
    level: int
    amount: Decimal
    paid: bool = False
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retriable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "amount": fmt(self.amount),
            "paid": self.paid,
            "txHash": self.tx_hash,
        }
        if self.level != BONUS_LEVEL:
            data = {"referrer": self.recipient, "level": self.level, **data}
        if self.error:
            data["error"] = self.error
            data["retriable"] = self.retriable
        return data


@dataclass
class DistributionResult:
    success: bool
    wallet: str
    already_received: bool = False
    new_user_bonus: Optional[LegResult] = None
    referrer_commissions: List[LegResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    error_code: Optional[str] = None
    retriable: bool = False

    @property
    def total_distributed(self) -> Decimal:
        legs = ([self.new_user_bonus] if self.new_user_bonus else []) + self.referrer_commissions
        return sum((leg.amount for leg in legs if leg.paid), Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "wallet": self.wallet,
            "alreadyReceived": self.already_received,
            "newUserBonus": self.new_user_bonus.to_dict() if self.new_user_bonus else {"paid": False},
            "referrerCommissions": [c.to_dict() for c in self.referrer_commissions],
            "totalDistributed": fmt(self.total_distributed),
            "errors": list(self.errors),
        }
        if not self.success:
            data["errorCode"] = self.error_code
            data["retriable"] = self.retriable
        return data


class DistributionExecutor:
    def __init__(
        self,
        store: ReferralStore,
        transfers: TransferService,
        treasury: TreasuryGate,
        tracker: ClickTracker,
        schedule: CommissionSchedule,
        new_user_bonus: Decimal,
        max_distribution: Decimal,
        pending_leg_ttl: timedelta,
    ):
        self.store = store
        self.transfers = transfers
        self.treasury = treasury
        self.tracker = tracker
        self.schedule = schedule
        self.new_user_bonus = q(new_user_bonus)
        self.max_distribution = q(max_distribution)
        self.pending_leg_ttl = pending_leg_ttl

    # ---------
    # distribution
    # ---------

    def distribute_signup_bonus(self, wallet: str, referral_code: Optional[str] = None) -> DistributionResult:
        """
        pay the signup bonus of `wallet` and the commissions of its chain.

        safe to call any number of times: paid legs are never paid again.
        raises InvalidWalletError on a malformed wallet; every other failure
        comes back as a DistributionResult with success=False.
        """
        wallet = normalize_wallet(wallet)
        log = logger.bind(wallet=wallet)

        # 1) idempotency: a fully recorded distribution is returned as-is
        bonus = self.store.get_signup_bonus(wallet)
        plan = self.store.get_plan(wallet)
        if bonus is not None and (plan is None or not self._unpaid_legs(wallet, plan)):
            log.info("signup_bonus_already_received", tx_hash=bonus.tx_hash)
            return self._already_received(wallet, bonus)

        # 2) eligibility: the referral edge is the only proof of a referred signup
        edge = self.store.get_edge(wallet)
        if edge is None and referral_code:
            edge = self.tracker.register_referral(wallet, referral_code, source="signup_bonus")
        if edge is None:
            error = NotEligibleError("User is not eligible for signup bonus (no referral found)")
            self._audit(wallet, "not_eligible", Decimal("0"), [str(error)])
            return self._failure(wallet, error)

        # 3-4) chain and amounts, frozen in a plan on first computation
        if plan is None:
            chain = get_lineage(wallet, self._referrer_of)
            try:
                amounts = compute_distribution(chain, self.schedule, self.new_user_bonus, self.max_distribution)
            except ExceedsCapError as e:
                log.error("signup_distribution_exceeds_cap", total=str(e.total), cap=str(e.cap), chain=chain)
                self._audit(wallet, "exceeds_cap", e.total, [str(e)])
                return self._failure(wallet, e)

            inserted = self.store.insert_plan(self._build_plan(wallet, edge.referral_code, chain, amounts))
            plan = inserted.existing if isinstance(inserted, AlreadyExists) else inserted.record

        if plan.total > self.max_distribution:
            # the cap was lowered after this plan was made
            error = ExceedsCapError(plan.total, self.max_distribution)
            log.error("signup_plan_exceeds_cap", total=str(plan.total), cap=str(self.max_distribution))
            self._audit(wallet, "exceeds_cap", plan.total, [str(error)])
            return self._failure(wallet, error, plan)

        # 5) treasury: only legs that are neither recorded nor in flight need funds
        unpaid = self._unpaid_legs(wallet, plan)
        required = sum(
            (leg.amount for leg in unpaid if self.store.get_pending_leg(leg.reference) is None),
            Decimal("0"),
        )
        if required > 0:
            try:
                check = self.treasury.check_available(required)
            except TransferError as e:
                log.warning("treasury_check_failed", error=str(e))
                return self._failure(wallet, e, plan)
            if not check.sufficient:
                error = TreasuryExhaustedError(required, check.remaining)
                self._audit(wallet, "treasury_exhausted", required, [str(error)])
                return self._failure(wallet, error, plan)

        # 6) every unpaid leg is attempted, whatever happened to the others
        outcomes = {leg.reference: self._execute_leg(wallet, leg) for leg in unpaid}

        # 7) assemble from records + this call's outcomes
        result = self._assemble(wallet, plan, outcomes)
        self._audit(
            wallet,
            "completed" if result.success else "partial_failure",
            required,
            result.errors,
        )
        log.info(
            "signup_distribution_finished",
            success=result.success,
            total=str(result.total_distributed),
            errors=len(result.errors),
        )
        return result

    def _execute_leg(self, wallet: str, leg: PlannedLeg) -> LegResult:
        log = logger.bind(wallet=wallet, reference=leg.reference, level=leg.level)
        outcome = LegResult(leg.reference, leg.recipient, leg.level, leg.amount)

        claim = PendingLeg(
            reference=leg.reference,
            wallet=wallet,
            recipient=leg.recipient,
            level=leg.level,
            amount=leg.amount,
        )
        inserted = self.store.insert_pending_leg(claim)
        if isinstance(inserted, AlreadyExists):
            # an earlier call timed out on this leg, or is still running
            try:
                tx_hash = self.transfers.find_transfer(leg.reference)
            except TransferError as e:
                return self._leg_failed(outcome, e)
            if tx_hash:
                log.info("leg_reconciled", tx_hash=tx_hash)
                return self._record_leg(wallet, leg, tx_hash)

            if utcnow() - inserted.existing.claimed_at < self.pending_leg_ttl:
                return self._leg_failed(
                    outcome,
                    TransferTimeoutError("Transfer outcome still pending; retry later", leg.reference),
                )

            # stale claim and nothing on chain: take it over
            log.warning("stale_leg_released", claimed_at=inserted.existing.claimed_at.isoformat())
            self.store.delete_pending_leg(leg.reference)
            if isinstance(self.store.insert_pending_leg(claim), AlreadyExists):
                return self._leg_failed(
                    outcome,
                    TransferTimeoutError("Transfer is being retried by another request", leg.reference),
                )

        # the claim is ours; a concurrent call may have paid and released it
        # after our unpaid list was read
        recorded_tx = self._recorded_tx(wallet, leg)
        if recorded_tx is not None:
            self.store.delete_pending_leg(leg.reference)
            log.info("leg_paid_by_concurrent_call", tx_hash=recorded_tx)
            return LegResult(leg.reference, leg.recipient, leg.level, leg.amount, paid=True, tx_hash=recorded_tx)

        try:
            tx_hash = self.transfers.transfer(leg.recipient, leg.amount, leg.reference)
        except TransferTimeoutError as e:
            # claim stays: the tx may still land and is reconciled next call
            log.warning("leg_outcome_unknown")
            return self._leg_failed(outcome, e)
        except TransferError as e:
            self.store.delete_pending_leg(leg.reference)
            log.warning("leg_failed", error=str(e), code=e.code)
            return self._leg_failed(outcome, e)

        return self._record_leg(wallet, leg, tx_hash)

    def _record_leg(self, wallet: str, leg: PlannedLeg, tx_hash: str) -> LegResult:
        if leg.level == BONUS_LEVEL:
            inserted = self.store.insert_signup_bonus(
                SignupBonusRecord(recipient_address=leg.recipient, amount=leg.amount, tx_hash=tx_hash)
            )
        else:
            inserted = self.store.insert_commission(
                CommissionRecord(
                    referrer_address=leg.recipient,
                    level=leg.level,
                    amount=leg.amount,
                    source_signup=wallet,
                    tx_hash=tx_hash,
                )
            )
        self.store.delete_pending_leg(leg.reference)

        if isinstance(inserted, AlreadyExists):
            # someone else completed this leg first; theirs is the record
            logger.warning(
                "leg_already_recorded",
                reference=leg.reference,
                tx_hash=tx_hash,
                recorded_tx_hash=inserted.existing.tx_hash,
            )
            tx_hash = inserted.existing.tx_hash
        else:
            logger.info("leg_paid", reference=leg.reference, recipient=leg.recipient, tx_hash=tx_hash)

        return LegResult(leg.reference, leg.recipient, leg.level, leg.amount, paid=True, tx_hash=tx_hash)

    @staticmethod
    def _leg_failed(outcome: LegResult, error: TransferError) -> LegResult:
        outcome.error = str(error)
        outcome.error_code = error.code
        outcome.retriable = error.retriable
        return outcome

    # ---------
    # plan / records helpers
    # ---------

    def _build_plan(
        self,
        wallet: str,
        referral_code: str,
        chain: List[Optional[str]],
        amounts: DistributionAmounts,
    ) -> DistributionPlan:
        legs = [
            PlannedLeg(
                reference=leg_reference(wallet, BONUS_LEVEL),
                recipient=wallet,
                level=BONUS_LEVEL,
                amount=amounts.new_user_bonus,
            )
        ]
        for share in amounts.commissions:
            legs.append(
                PlannedLeg(
                    reference=leg_reference(wallet, share.level),
                    recipient=share.referrer_address,
                    level=share.level,
                    amount=share.amount,
                )
            )
        return DistributionPlan(
            wallet=wallet,
            referral_code=referral_code,
            chain=[c for c in chain if c],
            legs=legs,
        )

    def _recorded(self, wallet: str) -> Dict[int, str]:
        """level -> tx hash of every leg of `wallet` that has a record."""
        recorded = {c.level: c.tx_hash for c in self.store.list_commissions_for_signup(wallet)}
        bonus = self.store.get_signup_bonus(wallet)
        if bonus is not None:
            recorded[BONUS_LEVEL] = bonus.tx_hash
        return recorded

    def _recorded_tx(self, wallet: str, leg: PlannedLeg) -> Optional[str]:
        if leg.level == BONUS_LEVEL:
            bonus = self.store.get_signup_bonus(wallet)
            return bonus.tx_hash if bonus else None
        for c in self.store.list_commissions_for_signup(wallet):
            if c.level == leg.level:
                return c.tx_hash
        return None

    def _unpaid_legs(self, wallet: str, plan: DistributionPlan) -> List[PlannedLeg]:
        recorded = self._recorded(wallet)
        return [leg for leg in plan.legs if leg.level not in recorded]

    def _assemble(self, wallet: str, plan: DistributionPlan, outcomes: Dict[str, LegResult]) -> DistributionResult:
        recorded = self._recorded(wallet)
        legs = []
        for leg in plan.legs:
            if leg.reference in outcomes:
                legs.append(outcomes[leg.reference])
            else:
                legs.append(
                    LegResult(
                        leg.reference,
                        leg.recipient,
                        leg.level,
                        leg.amount,
                        paid=leg.level in recorded,
                        tx_hash=recorded.get(leg.level),
                    )
                )

        failed = [leg for leg in legs if not leg.paid]
        result = DistributionResult(
            success=not failed,
            wallet=wallet,
            new_user_bonus=legs[0],
            referrer_commissions=legs[1:],
            errors=[f"{_leg_name(leg)}: {leg.error}" for leg in failed if leg.error],
        )
        if failed:
            codes = {leg.error_code for leg in failed}
            result.error_code = "treasury_exhausted" if codes == {"treasury_exhausted"} else "partial_failure"
            result.retriable = all(leg.retriable for leg in failed)
        return result

    def _already_received(self, wallet: str, bonus: SignupBonusRecord) -> DistributionResult:
        commissions = [
            LegResult(
                leg_reference(wallet, c.level),
                c.referrer_address,
                c.level,
                c.amount,
                paid=True,
                tx_hash=c.tx_hash,
            )
            for c in self.store.list_commissions_for_signup(wallet)
        ]
        return DistributionResult(
            success=True,
            wallet=wallet,
            already_received=True,
            new_user_bonus=LegResult(
                leg_reference(wallet, BONUS_LEVEL),
                wallet,
                BONUS_LEVEL,
                bonus.amount,
                paid=True,
                tx_hash=bonus.tx_hash,
            ),
            referrer_commissions=commissions,
        )

    def _failure(self, wallet: str, error, plan: Optional[DistributionPlan] = None) -> DistributionResult:
        result = DistributionResult(
            success=False,
            wallet=wallet,
            errors=[str(error)],
            error_code=error.code,
            retriable=error.retriable,
        )
        if plan is not None:
            # still show what was already paid for this signup
            assembled = self._assemble(wallet, plan, {})
            result.new_user_bonus = assembled.new_user_bonus
            result.referrer_commissions = assembled.referrer_commissions
        return result

    def _audit(self, wallet: str, outcome: str, required: Decimal, errors: List[str]) -> None:
        self.store.record_attempt(
            DistributionAttempt(
                id=str(uuid.uuid4()),
                wallet=wallet,
                outcome=outcome,
                required_amount=required,
                errors=errors,
            )
        )

    def _referrer_of(self, wallet: str) -> Optional[str]:
        edge = self.store.get_edge(wallet)
        return edge.referrer_address if edge else None

    # ---------
    # read-only queries
    # ---------

    def signup_bonus_status(self, wallet: str) -> Dict[str, Any]:
        wallet = normalize_wallet(wallet)
        bonus = self.store.get_signup_bonus(wallet)
        edge = self.store.get_edge(wallet)
        plan = self.store.get_plan(wallet)
        return {
            "wallet": wallet,
            "received": bonus is not None,
            "eligible": edge is not None,
            "complete": bonus is not None and (plan is None or not self._unpaid_legs(wallet, plan)),
            "amount": fmt(bonus.amount) if bonus else None,
            "txHash": bonus.tx_hash if bonus else None,
            "receivedAt": bonus.received_at.isoformat() if bonus else None,
            "referrer": edge.referrer_address if edge else None,
            "level": edge.level if edge else None,
        }

    def commission_summary(self, referrer: str, limit: int = 20) -> Dict[str, Any]:
        referrer = normalize_wallet(referrer)
        totals = self.store.commission_totals(referrer)
        levels = {}
        total = Decimal("0")
        for level in (1, 2, 3):
            count, amount = totals.get(level, (0, Decimal("0")))
            levels[f"level{level}"] = {"count": count, "amount": fmt(amount)}
            total += amount

        recent = [
            {
                "sourceSignup": c.source_signup,
                "level": c.level,
                "amount": fmt(c.amount),
                "txHash": c.tx_hash,
                "createdAt": c.created_at.isoformat(),
            }
            for c in self.store.list_commissions_for_referrer(referrer, limit=limit)
        ]
        return {
            "referrer": referrer,
            "totalEarned": fmt(total),
            "levels": levels,
            "recent": recent,
        }

    def bonus_config(self) -> Dict[str, Any]:
        return {
            "bonusAmount": fmt(self.new_user_bonus),
            "commissionMode": self.schedule.mode,
            "commissionRates": {
                "level1": fmt(self.schedule.level1),
                "level2": fmt(self.schedule.level2),
                "level3": fmt(self.schedule.level3),
            },
            "maxDistribution": fmt(self.max_distribution),
        }


def _leg_name(leg: LegResult) -> str:
    if leg.level == BONUS_LEVEL:
        return "new user bonus"
    return f"level {leg.level} commission to {leg.recipient}"
