from decimal import Decimal

from referral_store import InMemoryReferralStore, PendingLeg, SignupBonusRecord
from treasury import TreasuryGate
from fakes import FakeTransferService, wallet


def test_remaining_is_wallet_balance_without_a_pool_limit():
    gate = TreasuryGate(InMemoryReferralStore(), FakeTransferService(balance=Decimal("500")))
    assert gate.remaining() == Decimal("500")
    assert gate.check_available(Decimal("235")).sufficient


def test_pool_limit_caps_remaining():
    store = InMemoryReferralStore()
    store.insert_signup_bonus(SignupBonusRecord(recipient_address=wallet(1), amount=Decimal("200"), tx_hash="0x1"))
    gate = TreasuryGate(store, FakeTransferService(balance=Decimal("10000")), pool_limit=Decimal("400"))

    assert gate.remaining() == Decimal("200")
    check = gate.check_available(Decimal("235"))
    assert not check.sufficient
    assert check.remaining == Decimal("200")


def test_pending_legs_are_reserved():
    store = InMemoryReferralStore()
    store.insert_pending_leg(
        PendingLeg(reference="signup:x:bonus", wallet=wallet(1), recipient=wallet(1), level=0, amount=Decimal("200"))
    )
    gate = TreasuryGate(store, FakeTransferService(balance=Decimal("300")))

    assert gate.remaining() == Decimal("100")


def test_remaining_never_negative():
    store = InMemoryReferralStore()
    store.insert_signup_bonus(SignupBonusRecord(recipient_address=wallet(1), amount=Decimal("500"), tx_hash="0x1"))
    gate = TreasuryGate(store, FakeTransferService(), pool_limit=Decimal("300"))

    assert gate.remaining() == Decimal("0")


def test_status_reports_signups_remaining():
    gate = TreasuryGate(InMemoryReferralStore(), FakeTransferService(balance=Decimal("1000")))
    status = gate.status(Decimal("235"))

    assert status["balance"] == Decimal("1000")
    assert status["maxPerSignup"] == Decimal("235")
    assert status["signupsRemaining"] == 4
    assert status["sufficient"] is True
    assert status["poolLimit"] is None
