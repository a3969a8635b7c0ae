"""
error taxonomy for the signup-bonus pipeline.

every error knows whether retrying the same request later can succeed,
so the API layer can tell the caller without guessing.
"""

from decimal import Decimal
from typing import Optional


class ReferralError(Exception):
    code = "referral_error"
    retriable = False


class InvalidWalletError(ReferralError, ValueError):
    code = "invalid_wallet"


class InvalidReferralCodeError(ReferralError, ValueError):
    code = "invalid_referral_code"


class NotEligibleError(ReferralError):
    """no referral edge for this wallet."""

    code = "not_eligible"


class ExceedsCapError(ReferralError):
    """computed distribution is above MAX_DISTRIBUTION_PER_SIGNUP."""

    code = "exceeds_cap"

    def __init__(self, total: Decimal, cap: Decimal):
        super().__init__(f"Distribution of {total} exceeds per-signup cap of {cap}.")
        self.total = total
        self.cap = cap


class TreasuryExhaustedError(ReferralError):
    code = "treasury_exhausted"
    retriable = True

    def __init__(self, required: Decimal, remaining: Decimal):
        super().__init__(
            f"Treasury has {remaining} available, {required} required. Try again later."
        )
        self.required = required
        self.remaining = remaining


class TransferError(ReferralError):
    """a single transfer leg failed (RPC error, gas, rejected tx)."""

    code = "transfer_failed"
    retriable = True


class InsufficientFundsError(TransferError):
    """the transfer itself was rejected for lack of funds."""

    code = "treasury_exhausted"


class TransferTimeoutError(TransferError):
    """
    the transfer call did not answer in time.
    the outcome is unknown: the tx may still land.
    """

    code = "timeout"

    def __init__(self, message: str, reference: Optional[str] = None):
        super().__init__(message)
        self.reference = reference


class InviteNotFoundError(ReferralError):
    code = "invite_not_found"


class InviteExpiredError(ReferralError):
    code = "invite_expired"


class InviteClaimedError(ReferralError):
    """a single-use invite was already used by another wallet."""

    code = "invite_claimed"


class InvalidInvitePasswordError(ReferralError):
    code = "invalid_invite_password"
