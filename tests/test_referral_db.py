"""
PostgresReferralStore against a real database.

set REFERRALS_TEST_DATABASE_URL to a throwaway database to run these;
every test truncates the referral tables first.
"""

import os
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from db.db import apply_schema, get_conn
from referral_store import (
    AlreadyExists,
    ClickEvent,
    CommissionRecord,
    DistributionAttempt,
    DistributionPlan,
    Inserted,
    InviteClaim,
    PendingLeg,
    PlannedLeg,
    ReferralCode,
    ReferralEdge,
    SignupBonusRecord,
    SpecialInvite,
    utcnow,
)
from fakes import link, make_services, wallet

DATABASE_URL = os.environ.get("REFERRALS_TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(not DATABASE_URL, reason="REFERRALS_TEST_DATABASE_URL not set")

TABLES = (
    "referral_codes, referrals, referral_clicks, signup_bonuses, signup_commissions, "
    "distribution_plans, pending_legs, distribution_attempts, special_invites, special_invite_claims"
)


@pytest.fixture
def store():
    from db.store import PostgresReferralStore

    apply_schema(DATABASE_URL)
    with get_conn(DATABASE_URL) as conn:
        with conn.cursor() as cur:
            cur.execute(f"TRUNCATE {TABLES};")
        conn.commit()
    return PostgresReferralStore(DATABASE_URL)


def test_edge_first_write_wins(store):
    edge = ReferralEdge(new_user_address=wallet(1), referrer_address=wallet(2), level=1, referral_code="CG-020202")
    assert isinstance(store.insert_edge(edge), Inserted)

    other = edge.model_copy(update={"referrer_address": wallet(3), "referral_code": "CG-030303"})
    result = store.insert_edge(other)
    assert isinstance(result, AlreadyExists)
    assert result.existing.referrer_address == wallet(2)
    assert store.get_edge(wallet(1)).referral_code == "CG-020202"


def test_referral_codes(store):
    code = ReferralCode(code="CG-020202", owner_address=wallet(2))
    assert isinstance(store.insert_referral_code(code), Inserted)
    assert isinstance(store.insert_referral_code(code), AlreadyExists)
    assert store.get_referral_code("CG-020202").owner_address == wallet(2)
    assert store.get_code_for_owner(wallet(2)).code == "CG-020202"
    assert store.get_code_for_owner(wallet(3)) is None

    store.insert_referral_code(ReferralCode(code="OLDCODE", owner_address=wallet(3), is_active=False))
    assert store.get_code_for_owner(wallet(3)) is None


def test_click_conversion(store):
    click = ClickEvent(id=str(uuid.uuid4()), referral_code="CG-020202", ip_hash="h")
    store.insert_click(click)

    since = utcnow() - timedelta(days=30)
    found = store.find_unconverted_click("h", "CG-020202", since)
    assert found.id == click.id

    assert store.mark_click_converted(click.id, wallet(1), utcnow())
    assert not store.mark_click_converted(click.id, wallet(1), utcnow())
    assert store.find_unconverted_click("h", "CG-020202", since) is None
    assert store.get_click(click.id).converted_wallet == wallet(1)


def test_ledger_uniqueness_and_totals(store):
    bonus = SignupBonusRecord(recipient_address=wallet(1), amount=Decimal("200"), tx_hash="0xb")
    assert isinstance(store.insert_signup_bonus(bonus), Inserted)
    again = store.insert_signup_bonus(bonus.model_copy(update={"tx_hash": "0xc"}))
    assert isinstance(again, AlreadyExists)
    assert again.existing.tx_hash == "0xb"

    commission = CommissionRecord(
        referrer_address=wallet(2), level=1, amount=Decimal("20"), source_signup=wallet(1), tx_hash="0x1"
    )
    assert isinstance(store.insert_commission(commission), Inserted)
    assert isinstance(store.insert_commission(commission), AlreadyExists)

    assert store.distributed_total() == Decimal("220")
    assert store.commission_totals(wallet(2)) == {1: (1, Decimal("20"))}
    assert [c.level for c in store.list_commissions_for_signup(wallet(1))] == [1]
    assert len(store.list_commissions_for_referrer(wallet(2))) == 1


def test_plan_pending_and_attempts(store):
    plan = DistributionPlan(
        wallet=wallet(1),
        referral_code="CG-020202",
        chain=[wallet(2)],
        legs=[
            PlannedLeg(reference="signup:w:bonus", recipient=wallet(1), level=0, amount=Decimal("200")),
            PlannedLeg(reference="signup:w:l1", recipient=wallet(2), level=1, amount=Decimal("20")),
        ],
    )
    assert isinstance(store.insert_plan(plan), Inserted)
    existing = store.insert_plan(plan.model_copy(update={"chain": []}))
    assert isinstance(existing, AlreadyExists)
    assert existing.existing.chain == [wallet(2)]
    assert store.get_plan(wallet(1)).total == Decimal("220")

    leg = PendingLeg(reference="signup:w:l1", wallet=wallet(1), recipient=wallet(2), level=1, amount=Decimal("20"))
    assert isinstance(store.insert_pending_leg(leg), Inserted)
    assert isinstance(store.insert_pending_leg(leg), AlreadyExists)
    assert store.pending_total() == Decimal("20")
    store.delete_pending_leg(leg.reference)
    assert store.get_pending_leg(leg.reference) is None

    store.record_attempt(DistributionAttempt(id=str(uuid.uuid4()), wallet=wallet(1), outcome="completed"))
    assert [a.outcome for a in store.list_attempts(wallet(1))] == ["completed"]


def test_distribution_end_to_end(store):
    services = make_services(store=store)
    link(services.tracker, wallet(2), wallet(3))
    link(services.tracker, wallet(1), wallet(2))

    first = services.executor.distribute_signup_bonus(wallet(1))
    assert first.success
    assert first.total_distributed == Decimal("230")

    again = services.executor.distribute_signup_bonus(wallet(1))
    assert again.already_received
    assert len(services.transfers.sent) == 3


def test_special_invites(store):
    invite = SpecialInvite(
        invite_code="SI-X-1",
        referrer_wallet=wallet(2),
        referrer_code="CG-020202",
        expires_at=utcnow() + timedelta(days=30),
    )
    assert isinstance(store.insert_invite(invite), Inserted)
    assert isinstance(store.insert_invite(invite), AlreadyExists)

    assert store.claim_invite("SI-X-1", wallet(1), utcnow())
    assert not store.claim_invite("SI-X-1", wallet(3), utcnow())
    stored = store.get_invite("SI-X-1")
    assert stored.status == "claimed"
    assert stored.claimed_by == wallet(1)

    claim = store.save_invite_claim(InviteClaim(invite_code="SI-X-1", wallet=wallet(1)))
    store.save_invite_claim(
        claim.model_copy(
            update={
                "completed_at": utcnow(),
                "bonus_distributed": True,
                "bonus_amount": Decimal("220"),
                "bonus_tx_hashes": ["0xa", "0xb"],
            }
        )
    )
    saved = store.get_invite_claim("SI-X-1", wallet(1))
    assert saved.bonus_amount == Decimal("220")
    assert saved.bonus_tx_hashes == ["0xa", "0xb"]
    assert [c.wallet for c in store.list_invite_claims("SI-X-1")] == [wallet(1)]


def test_invite_signup_end_to_end(store):
    services = make_services(store=store)
    invite = services.invites.create_invite(wallet(2), permanent=True)

    result = services.invites.complete_invite_signup(invite.invite_code, wallet(1))
    assert result.success
    assert store.get_edge(wallet(1)).source == "permanent_invite"
    assert store.get_invite_claim(invite.invite_code, wallet(1)).bonus_distributed
