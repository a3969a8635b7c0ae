"""
referral link clicks and their conversion into referral edges.

clicks are soft attribution; the referral edge is the hard record.
"""

import hashlib
import hmac
import re
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from errors import InvalidReferralCodeError
from logging_config import get_logger
from referral_engine import (
    edge_level,
    normalize_code,
    normalize_wallet,
    referral_code_for,
    would_create_cycle,
)
from referral_store import (
    AlreadyExists,
    ClickEvent,
    ReferralCode,
    ReferralEdge,
    ReferralStore,
    utcnow,
)

logger = get_logger(__name__)


# ---------
# user-agent classification
# ---------

TABLET_RE = re.compile(r"(tablet|ipad|playbook|silk)|(android(?!.*mobi))", re.IGNORECASE)
MOBILE_RE = re.compile(r"mobile|android|iphone|ipod|blackberry|opera mini|iemobile", re.IGNORECASE)
DESKTOP_RE = re.compile(r"windows|macintosh|linux", re.IGNORECASE)


def detect_device_type(user_agent: str) -> str:
    if TABLET_RE.search(user_agent):
        return "tablet"
    if MOBILE_RE.search(user_agent):
        return "mobile"
    if DESKTOP_RE.search(user_agent):
        return "desktop"
    return "unknown"


def detect_browser(user_agent: str) -> str:
    # order matters: Chrome and Edge both claim Safari
    if "Edge" in user_agent or "Edg/" in user_agent:
        return "Edge"
    if "Opera" in user_agent or "OPR" in user_agent:
        return "Opera"
    if "Chrome" in user_agent:
        return "Chrome"
    if "Firefox" in user_agent:
        return "Firefox"
    if "Safari" in user_agent:
        return "Safari"
    return "Other"


def detect_os(user_agent: str) -> str:
    if "Windows" in user_agent:
        return "Windows"
    if "iPhone" in user_agent or "iPad" in user_agent or "iOS" in user_agent:
        return "iOS"
    if "Android" in user_agent:
        return "Android"
    if "Mac" in user_agent:
        return "macOS"
    if "Linux" in user_agent:
        return "Linux"
    return "Other"


def hash_ip(ip: str, salt: str) -> str:
    """one-way salted hash; the raw IP is never stored or logged."""
    return hmac.new(salt.encode(), ip.encode(), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class ClickReceipt:
    click_id: str
    ip_hash: str


class ClickTracker:
    def __init__(self, store: ReferralStore, ip_hash_salt: str, cookie_window: timedelta):
        self.store = store
        self.ip_hash_salt = ip_hash_salt
        self.cookie_window = cookie_window

    def track_click(self, code: str, metadata: Dict[str, Any]) -> ClickReceipt:
        """
        record one click on a referral link.

        metadata keys: ip, user_agent, source, medium, campaign, referer,
        landing_page (all optional).
        raises InvalidReferralCodeError on a malformed code.
        """
        normalized = normalize_code(code)
        user_agent = metadata.get("user_agent") or ""
        ip_hash = hash_ip(metadata.get("ip") or "unknown", self.ip_hash_salt)

        click = ClickEvent(
            id=str(uuid.uuid4()),
            referral_code=normalized,
            ip_hash=ip_hash,
            user_agent=user_agent,
            device_type=detect_device_type(user_agent),
            browser=detect_browser(user_agent),
            os=detect_os(user_agent),
            source=metadata.get("source"),
            medium=metadata.get("medium"),
            campaign=metadata.get("campaign"),
            referer=metadata.get("referer"),
            landing_page=metadata.get("landing_page"),
        )
        self.store.insert_click(click)
        logger.info("referral_click_tracked", code=normalized, click_id=click.id, device=click.device_type)
        return ClickReceipt(click_id=click.id, ip_hash=ip_hash)

    def register_referral(
        self,
        wallet: str,
        code: str,
        source: Optional[str] = None,
        campaign: Optional[str] = None,
    ) -> Optional[ReferralEdge]:
        """
        attach `wallet` to the owner of `code`.

        returns the new edge, or None when nothing was registered:
          - wallet already has an edge (first referral wins, permanently)
          - code unknown or inactive
          - self-referral or a cycle in the graph
        """
        wallet = normalize_wallet(wallet)
        try:
            code = normalize_code(code)
        except InvalidReferralCodeError:
            logger.info("referral_code_rejected", wallet=wallet)
            return None

        if self.store.get_edge(wallet) is not None:
            return None

        referral_code = self.store.get_referral_code(code)
        if referral_code is None or not referral_code.is_active:
            logger.info("referral_code_unusable", code=code, found=referral_code is not None)
            return None

        referrer = referral_code.owner_address
        if referrer == wallet:
            logger.info("self_referral_rejected", wallet=wallet)
            return None

        if would_create_cycle(wallet, referrer, self._referrer_of):
            logger.warning("referral_cycle_rejected", wallet=wallet, referrer=referrer)
            return None

        referrer_edge = self.store.get_edge(referrer)
        edge = ReferralEdge(
            new_user_address=wallet,
            referrer_address=referrer,
            level=edge_level(referrer_edge.level if referrer_edge else None),
            referral_code=code,
            source=source,
            campaign=campaign,
        )

        result = self.store.insert_edge(edge)
        if isinstance(result, AlreadyExists):
            # a concurrent registration got there first
            return None

        logger.info("referral_registered", wallet=wallet, referrer=referrer, level=edge.level, code=code)
        return edge

    def mark_click_converted(self, ip_hash: str, wallet: str) -> bool:
        """
        link the latest unconverted click from `ip_hash` to `wallet`.
        only a click on the code the wallet registered with counts, and only
        inside the cookie window. a miss is not an error.
        """
        wallet = normalize_wallet(wallet)
        edge = self.store.get_edge(wallet)
        if edge is None:
            return False

        since = utcnow() - self.cookie_window
        click = self.store.find_unconverted_click(ip_hash, edge.referral_code, since)
        if click is None:
            logger.debug("referral_click_not_found", wallet=wallet)
            return False

        converted = self.store.mark_click_converted(click.id, wallet, utcnow())
        if converted:
            logger.info("referral_click_converted", click_id=click.id, wallet=wallet)
        return converted

    def get_code_info(self, code: str) -> Optional[ReferralCode]:
        try:
            return self.store.get_referral_code(normalize_code(code))
        except InvalidReferralCodeError:
            return None

    def get_or_create_code(self, wallet: str) -> ReferralCode:
        """return the wallet's active code, creating the default CG-XXXXXX one."""
        wallet = normalize_wallet(wallet)
        existing = self.store.get_code_for_owner(wallet)
        if existing is not None:
            return existing

        result = self.store.insert_referral_code(
            ReferralCode(code=referral_code_for(wallet), owner_address=wallet)
        )
        if isinstance(result, AlreadyExists):
            if result.existing.owner_address != wallet:
                # prefix collision with another wallet
                raise InvalidReferralCodeError(
                    f"Referral code {result.existing.code} is taken by another wallet"
                )
            if not result.existing.is_active:
                raise InvalidReferralCodeError(f"Referral code {result.existing.code} has been deactivated")
            return result.existing
        logger.info("referral_code_created", wallet=wallet, code=result.record.code)
        return result.record

    def _referrer_of(self, wallet: str) -> Optional[str]:
        edge = self.store.get_edge(wallet)
        return edge.referrer_address if edge else None
