from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from click_tracker import ClickTracker
from commission_engine import CommissionSchedule
from db.store import PostgresReferralStore
from distribution_engine import DistributionExecutor
from invites import InviteService
from referral_store import ReferralStore
from settings import Settings
from transfers import HttpTransferClient, TransferService
from treasury import TreasuryGate


@dataclass
class Services:
    """everything a request handler needs, built once per process."""

    settings: Settings
    store: ReferralStore
    transfers: TransferService
    treasury: TreasuryGate
    tracker: ClickTracker
    executor: DistributionExecutor
    invites: InviteService


def build_services(
    config: Settings,
    store: Optional[ReferralStore] = None,
    transfers: Optional[TransferService] = None,
) -> Services:
    """
    wire the pipeline from settings.
    store/transfers default to PostgreSQL and the HTTP signer service.
    """
    if store is None:
        store = PostgresReferralStore(config.database_url)

    if transfers is None:
        transfers = HttpTransferClient(
            base_url=config.transfer_service_url,
            timeout=config.transfer_timeout_seconds,
            token=config.transfer_service_token,
        )

    treasury = TreasuryGate(store, transfers, pool_limit=config.signup_pool_limit)
    tracker = ClickTracker(
        store,
        ip_hash_salt=config.ip_hash_salt,
        cookie_window=timedelta(seconds=config.referral_cookie_max_age),
    )
    executor = DistributionExecutor(
        store=store,
        transfers=transfers,
        treasury=treasury,
        tracker=tracker,
        schedule=CommissionSchedule(
            level1=config.commission_level1,
            level2=config.commission_level2,
            level3=config.commission_level3,
            mode=config.commission_mode,
        ),
        new_user_bonus=config.signup_bonus_amount,
        max_distribution=config.max_distribution_per_signup,
        pending_leg_ttl=timedelta(seconds=config.pending_leg_ttl_seconds),
    )
    invites = InviteService(
        store,
        tracker=tracker,
        executor=executor,
        invite_ttl=timedelta(seconds=config.special_invite_ttl_seconds),
    )
    return Services(
        settings=config,
        store=store,
        transfers=transfers,
        treasury=treasury,
        tracker=tracker,
        executor=executor,
        invites=invites,
    )
