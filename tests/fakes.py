from decimal import Decimal

from errors import InsufficientFundsError, TransferError, TransferTimeoutError
from referral_store import InMemoryReferralStore
from services import build_services
from settings import Settings


def wallet(n: int) -> str:
    """distinct test wallet whose default code is CG-<n><n><n> in hex."""
    return "0x" + f"{n:02x}" * 20


class FakeTransferService:
    """
    scripted stand-in for the signer service.

    script(reference, mode, ...) queues outcomes for the next transfers of a leg:
      "fail"          rejected, nothing sent
      "insufficient"  rejected for lack of funds
      "timeout"       no answer, nothing sent
      "landed"        no answer, but the tx went through
    """

    def __init__(self, balance=Decimal("1000000")):
        self.balance_amount = Decimal(balance)
        self.sent = []
        self.attempts = []
        self.landed = {}
        self.scripts = {}

    def script(self, reference: str, *modes: str) -> None:
        self.scripts.setdefault(reference, []).extend(modes)

    def transfer(self, to, amount, reference):
        self.attempts.append(reference)
        queued = self.scripts.get(reference)
        mode = queued.pop(0) if queued else "ok"

        if mode == "fail":
            raise TransferError(f"RPC error on {reference}")
        if mode == "insufficient" or amount > self.balance_amount:
            raise InsufficientFundsError(f"Insufficient funds for transfer {reference}")
        if mode == "timeout":
            raise TransferTimeoutError(f"Transfer {reference} timed out", reference=reference)

        tx_hash = "0x" + f"{len(self.sent) + 1:064x}"
        self.sent.append((to, amount, reference, tx_hash))
        self.balance_amount -= amount
        self.landed[reference] = tx_hash

        if mode == "landed":
            raise TransferTimeoutError(f"Transfer {reference} timed out", reference=reference)
        return tx_hash

    def find_transfer(self, reference):
        return self.landed.get(reference)

    def balance(self):
        return self.balance_amount

    def sent_to(self, to):
        return [s for s in self.sent if s[0] == to]


def make_settings(**overrides) -> Settings:
    values = dict(
        signup_bonus_amount=Decimal("200"),
        commission_level1=Decimal("20"),
        commission_level2=Decimal("10"),
        commission_level3=Decimal("5"),
        max_distribution_per_signup=Decimal("235"),
        ip_hash_salt="test-salt",
        pending_leg_ttl_seconds=900,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_services(transfers=None, store=None, **overrides):
    """fresh in-memory pipeline for each test."""
    return build_services(
        make_settings(**overrides),
        store=store or InMemoryReferralStore(),
        transfers=transfers or FakeTransferService(),
    )


def link(tracker, child: str, parent: str):
    """register `child` under `parent` using the parent's default code."""
    code = tracker.get_or_create_code(parent).code
    edge = tracker.register_referral(child, code)
    assert edge is not None
    return edge

