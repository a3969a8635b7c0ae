"""
special invites: shareable links bound to a referrer's code.

a single-use invite is closed by the first wallet that signs up through it;
a permanent one stays open and never expires. either way the signup goes
through the normal referral registration and bonus distribution.
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from passlib.context import CryptContext

from click_tracker import ClickTracker
from commission_engine import fmt
from distribution_engine import DistributionExecutor, DistributionResult
from errors import (
    InvalidInvitePasswordError,
    InvalidReferralCodeError,
    InviteClaimedError,
    InviteExpiredError,
    InviteNotFoundError,
)
from logging_config import get_logger
from referral_engine import normalize_code, normalize_wallet
from referral_store import AlreadyExists, InviteClaim, ReferralStore, SpecialInvite, utcnow

logger = get_logger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    digits = ""
    while True:
        n, r = divmod(n, 36)
        digits = BASE36[r] + digits
        if n == 0:
            return digits


def generate_invite_code() -> str:
    """SI-<ms timestamp, base36>-<12 hex chars>, upper-cased."""
    return f"SI-{_base36(int(time.time() * 1000))}-{secrets.token_hex(6)}".upper()


def normalize_invite_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


@dataclass
class InviteSignupResult:
    success: bool
    invite_code: str
    wallet: str
    referral_created: bool = False
    bonus_distributed: bool = False
    bonus_amount: Decimal = Decimal("0")
    bonus_tx_hashes: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    distribution: Optional[DistributionResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "inviteCode": self.invite_code,
            "wallet": self.wallet,
            "referralCreated": self.referral_created,
            "bonusDistributed": self.bonus_distributed,
            "bonusAmount": fmt(self.bonus_amount),
            "bonusTxHashes": list(self.bonus_tx_hashes),
            "errors": list(self.errors),
        }
        if self.distribution is not None:
            data["distribution"] = self.distribution.to_dict()
        return data


class InviteService:
    def __init__(
        self,
        store: ReferralStore,
        tracker: ClickTracker,
        executor: DistributionExecutor,
        invite_ttl: timedelta,
    ):
        self.store = store
        self.tracker = tracker
        self.executor = executor
        self.invite_ttl = invite_ttl

    def create_invite(
        self,
        referrer_wallet: str,
        referrer_code: Optional[str] = None,
        password: Optional[str] = None,
        custom_message: Optional[str] = None,
        permanent: bool = False,
    ) -> SpecialInvite:
        """
        create an invite for `referrer_wallet`.

        the invite is bound to `referrer_code` when given (it must be an
        active code of the referrer), otherwise to the referrer's default code.
        raises InvalidWalletError / InvalidReferralCodeError.
        """
        referrer_wallet = normalize_wallet(referrer_wallet)
        if referrer_code:
            code = self._owned_code(referrer_wallet, referrer_code)
        else:
            code = self.tracker.get_or_create_code(referrer_wallet).code

        now = utcnow()
        invite = SpecialInvite(
            invite_code=generate_invite_code(),
            referrer_wallet=referrer_wallet,
            referrer_code=code,
            password_hash=pwd_context.hash(password) if password else None,
            custom_message=custom_message or None,
            permanent=permanent,
            created_at=now,
            expires_at=None if permanent else now + self.invite_ttl,
        )
        result = self.store.insert_invite(invite)
        if isinstance(result, AlreadyExists):
            # same millisecond and same random suffix
            raise RuntimeError(f"Invite code collision on {invite.invite_code}")

        logger.info(
            "special_invite_created",
            invite_code=invite.invite_code,
            referrer=referrer_wallet,
            permanent=permanent,
            has_password=invite.password_hash is not None,
        )
        return invite

    def get_invite(self, invite_code: str) -> SpecialInvite:
        """the invite if it can still be used; raises otherwise."""
        invite = self._find(invite_code)
        if self._expired(invite):
            raise InviteExpiredError("Invite has expired")
        if invite.status == "claimed":
            raise InviteClaimedError("Invite has already been used")
        return invite

    def complete_invite_signup(
        self,
        invite_code: str,
        wallet: str,
        password: Optional[str] = None,
    ) -> InviteSignupResult:
        """
        sign `wallet` up through an invite: register the referral under the
        invite's code, distribute the signup bonus, record the claim.

        a wallet that already claimed the invite may call again; the bonus
        distribution underneath is idempotent.
        """
        wallet = normalize_wallet(wallet)
        invite = self._find(invite_code)
        log = logger.bind(invite_code=invite.invite_code, wallet=wallet)

        previous = self.store.get_invite_claim(invite.invite_code, wallet)
        if previous is None:
            if self._expired(invite):
                raise InviteExpiredError("Invite has expired")
            if invite.status == "claimed" and invite.claimed_by != wallet:
                raise InviteClaimedError("Invite has already been used")

        if invite.password_hash and not (password and pwd_context.verify(password, invite.password_hash)):
            log.info("special_invite_password_rejected")
            raise InvalidInvitePasswordError("Invalid invite password")

        if not invite.permanent and invite.claimed_by != wallet:
            if not self.store.claim_invite(invite.invite_code, wallet, utcnow()):
                # another wallet claimed it since we read it
                raise InviteClaimedError("Invite has already been used")

        claim = previous or self.store.save_invite_claim(InviteClaim(invite_code=invite.invite_code, wallet=wallet))

        source = "permanent_invite" if invite.permanent else "special_invite"
        edge = self.tracker.register_referral(wallet, invite.referrer_code, source=source, campaign=invite.invite_code)
        referral_created = edge is not None or claim.referral_created

        distribution = self.executor.distribute_signup_bonus(wallet, invite.referrer_code)
        paid = ([distribution.new_user_bonus] if distribution.new_user_bonus else []) + distribution.referrer_commissions
        tx_hashes = [leg.tx_hash for leg in paid if leg.paid and leg.tx_hash]

        self.store.save_invite_claim(
            claim.model_copy(
                update={
                    "completed_at": utcnow(),
                    "referral_created": referral_created,
                    "bonus_distributed": distribution.success,
                    "bonus_amount": distribution.total_distributed if distribution.success else Decimal("0"),
                    "bonus_tx_hashes": tx_hashes,
                }
            )
        )

        log.info(
            "special_invite_signup_completed",
            referral_created=referral_created,
            bonus_distributed=distribution.success,
            tx_count=len(tx_hashes),
        )
        return InviteSignupResult(
            success=distribution.success,
            invite_code=invite.invite_code,
            wallet=wallet,
            referral_created=referral_created,
            bonus_distributed=distribution.success,
            bonus_amount=distribution.total_distributed if distribution.success else Decimal("0"),
            bonus_tx_hashes=tx_hashes,
            errors=list(distribution.errors),
            distribution=distribution,
        )

    def signup_status(self, invite_code: str, wallet: str) -> Dict[str, Any]:
        claim = self.store.get_invite_claim(normalize_invite_code(invite_code), normalize_wallet(wallet))
        if claim is None:
            return {"exists": False, "completed": False, "bonusClaimed": False}
        return {
            "exists": True,
            "completed": claim.completed_at is not None,
            "bonusClaimed": claim.bonus_distributed,
            "bonusAmount": fmt(claim.bonus_amount) if claim.bonus_distributed else None,
        }

    def list_invite_signups(self, invite_code: str) -> List[Dict[str, Any]]:
        return [
            {
                "wallet": c.wallet,
                "claimedAt": c.claimed_at.isoformat(),
                "completedAt": c.completed_at.isoformat() if c.completed_at else None,
                "bonusClaimed": c.bonus_distributed,
                "bonusAmount": fmt(c.bonus_amount),
            }
            for c in self.store.list_invite_claims(normalize_invite_code(invite_code))
        ]

    def _find(self, invite_code: str) -> SpecialInvite:
        invite = self.store.get_invite(normalize_invite_code(invite_code))
        if invite is None:
            raise InviteNotFoundError("Invite not found")
        return invite

    @staticmethod
    def _expired(invite: SpecialInvite) -> bool:
        return invite.expires_at is not None and invite.expires_at < utcnow()

    def _owned_code(self, referrer_wallet: str, referrer_code: str) -> str:
        code = self.store.get_referral_code(normalize_code(referrer_code))
        if code is None or not code.is_active or code.owner_address != referrer_wallet:
            raise InvalidReferralCodeError("Referral code is not an active code of this referrer")
        return code.code
