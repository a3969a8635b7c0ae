import re
from typing import Callable, List, Optional

from errors import InvalidReferralCodeError, InvalidWalletError

WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
# CG-XXXXXX (hex) or a custom alphanumeric code
CODE_RE = re.compile(r"^CG-[A-F0-9]{6}$|^[A-Z0-9]{4,20}$")

MAX_LEVELS = 3

ReferrerLookup = Callable[[str], Optional[str]]


def is_valid_wallet(wallet: Optional[str]) -> bool:
    return bool(wallet) and WALLET_RE.match(wallet) is not None


def normalize_wallet(wallet: Optional[str]) -> str:
    """validate and lowercase a hex wallet address."""
    if not is_valid_wallet(wallet):
        raise InvalidWalletError("Invalid wallet address format")
    return wallet.lower()


def normalize_code(code: Optional[str]) -> str:
    """validate and uppercase a referral code."""
    candidate = (code or "").strip().upper()
    if not CODE_RE.match(candidate):
        raise InvalidReferralCodeError(f"Invalid referral code format: {code!r}")
    return candidate


def is_valid_referral_code(code: Optional[str]) -> bool:
    try:
        normalize_code(code)
    except InvalidReferralCodeError:
        return False
    return True


def referral_code_for(wallet: str) -> str:
    """default code of a wallet: CG- plus the first six hex chars."""
    return "CG-" + normalize_wallet(wallet)[2:8].upper()


def get_lineage(wallet: str, get_referrer: ReferrerLookup, max_levels: int = MAX_LEVELS) -> List[Optional[str]]:
    """
    given a wallet and a lookup child -> referrer,
    return [L1, L2, L3,...] up to max_levels.
    if there is no referrer at some level, the rest are None.
    """
    lineage: List[Optional[str]] = []
    current = wallet

    for _ in range(max_levels):
        parent = get_referrer(current)
        if not parent or parent == wallet or parent in lineage:
            # corrupted graph (loop) is treated as end of chain
            break
        lineage.append(parent)
        current = parent

    lineage.extend([None] * (max_levels - len(lineage)))
    return lineage


def would_create_cycle(new_user: str, referrer: str, get_referrer: ReferrerLookup) -> bool:
    """walk UP from referrer; hitting new_user means the edge closes a loop."""
    seen = set()
    current: Optional[str] = referrer
    while current is not None:
        if current == new_user:
            return True
        if current in seen:
            return True
        seen.add(current)
        current = get_referrer(current)
    return False


def edge_level(referrer_level: Optional[int]) -> int:
    """
    level of a new edge, relative to the referrer's own position:
    1 when the referrer was not referred, else one deeper, capped at 3.
    """
    if referrer_level is None:
        return 1
    return min(referrer_level + 1, MAX_LEVELS)
