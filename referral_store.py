"""
records and the repository protocol behind the referral pipeline.

every record carries a schema_version and is validated on read; a blob
with an unknown version or a broken payload is treated as absent.
"""

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Generic, List, Literal, Optional, Protocol, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, Field, ValidationError

from logging_config import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------
# records
# ---------

class Record(BaseModel):
    schema_version: Literal[1] = SCHEMA_VERSION


class ReferralCode(Record):
    code: str
    owner_address: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class ReferralEdge(Record):
    new_user_address: str
    referrer_address: str
    level: int = Field(ge=1, le=3)
    referral_code: str
    source: Optional[str] = None
    campaign: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ClickEvent(Record):
    id: str
    referral_code: str
    ip_hash: str
    user_agent: str = ""
    device_type: Literal["desktop", "mobile", "tablet", "unknown"] = "unknown"
    browser: str = "Other"
    os: str = "Other"
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    referer: Optional[str] = None
    landing_page: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    converted_wallet: Optional[str] = None
    converted_at: Optional[datetime] = None


class SignupBonusRecord(Record):
    recipient_address: str
    amount: Decimal
    tx_hash: str
    received_at: datetime = Field(default_factory=utcnow)


class CommissionRecord(Record):
    referrer_address: str
    level: int = Field(ge=1, le=3)
    amount: Decimal
    source_signup: str
    tx_hash: str
    created_at: datetime = Field(default_factory=utcnow)


class PlannedLeg(Record):
    reference: str
    recipient: str
    level: int = Field(ge=0, le=3, description="0 is the new-user bonus")
    amount: Decimal


class DistributionPlan(Record):
    wallet: str
    referral_code: str
    chain: List[str]
    legs: List[PlannedLeg]
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def total(self) -> Decimal:
        return sum((leg.amount for leg in self.legs), Decimal("0"))


class PendingLeg(Record):
    reference: str
    wallet: str
    recipient: str
    level: int
    amount: Decimal
    claimed_at: datetime = Field(default_factory=utcnow)


class DistributionAttempt(Record):
    id: str
    wallet: str
    outcome: Literal["completed", "partial_failure", "treasury_exhausted", "exceeds_cap", "not_eligible"]
    required_amount: Decimal = Decimal("0")
    errors: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class SpecialInvite(Record):
    invite_code: str
    referrer_wallet: str
    referrer_code: str
    password_hash: Optional[str] = None
    custom_message: Optional[str] = None
    permanent: bool = False
    status: Literal["active", "claimed"] = "active"
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = Field(None, description="None for permanent invites")
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None


class InviteClaim(Record):
    invite_code: str
    wallet: str
    claimed_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    referral_created: bool = False
    bonus_distributed: bool = False
    bonus_amount: Decimal = Decimal("0")
    bonus_tx_hashes: List[str] = Field(default_factory=list)


R = TypeVar("R", bound=Record)


def load_record(model: Type[R], raw: Union[str, bytes, dict, None]) -> Optional[R]:
    """decode a stored blob; unknown versions and invalid payloads read as absent."""
    if raw is None:
        return None
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except ValueError:
        logger.warning("record_undecodable", model=model.__name__)
        return None

    version = data.get("schema_version") if isinstance(data, dict) else None
    if version != SCHEMA_VERSION:
        logger.warning("record_unknown_schema_version", model=model.__name__, version=version)
        return None

    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning("record_invalid", model=model.__name__, errors=e.error_count())
        return None


def dump_record(record: Record) -> str:
    return record.model_dump_json()


# ---------
# insert-if-absent result
# ---------

T = TypeVar("T")


@dataclass(frozen=True)
class Inserted(Generic[T]):
    record: T


@dataclass(frozen=True)
class AlreadyExists(Generic[T]):
    existing: T


InsertResult = Union[Inserted[T], AlreadyExists[T]]


# ---------
# repository protocol
# ---------

class ReferralStore(Protocol):
    # referral codes
    def get_referral_code(self, code: str) -> Optional[ReferralCode]: ...
    # oldest active code of the owner
    def get_code_for_owner(self, owner_address: str) -> Optional[ReferralCode]: ...
    def insert_referral_code(self, record: ReferralCode) -> InsertResult[ReferralCode]: ...

    # referral graph
    def get_edge(self, new_user_address: str) -> Optional[ReferralEdge]: ...
    def insert_edge(self, edge: ReferralEdge) -> InsertResult[ReferralEdge]: ...

    # clicks
    def insert_click(self, click: ClickEvent) -> ClickEvent: ...
    def find_unconverted_click(self, ip_hash: str, referral_code: str, since: datetime) -> Optional[ClickEvent]: ...
    def mark_click_converted(self, click_id: str, wallet: str, at: datetime) -> bool: ...

    # payout ledger
    def get_signup_bonus(self, wallet: str) -> Optional[SignupBonusRecord]: ...
    def insert_signup_bonus(self, record: SignupBonusRecord) -> InsertResult[SignupBonusRecord]: ...
    def list_commissions_for_signup(self, wallet: str) -> List[CommissionRecord]: ...
    def insert_commission(self, record: CommissionRecord) -> InsertResult[CommissionRecord]: ...
    def list_commissions_for_referrer(self, referrer_address: str, limit: int = 50) -> List[CommissionRecord]: ...
    def commission_totals(self, referrer_address: str) -> Dict[int, Tuple[int, Decimal]]: ...
    def distributed_total(self) -> Decimal: ...

    # plans, in-flight legs, audit
    def get_plan(self, wallet: str) -> Optional[DistributionPlan]: ...
    def insert_plan(self, plan: DistributionPlan) -> InsertResult[DistributionPlan]: ...
    def get_pending_leg(self, reference: str) -> Optional[PendingLeg]: ...
    def insert_pending_leg(self, leg: PendingLeg) -> InsertResult[PendingLeg]: ...
    def delete_pending_leg(self, reference: str) -> None: ...
    def pending_total(self) -> Decimal: ...
    def record_attempt(self, attempt: DistributionAttempt) -> None: ...
    def list_attempts(self, wallet: str) -> List[DistributionAttempt]: ...

    # special invites
    def get_invite(self, invite_code: str) -> Optional[SpecialInvite]: ...
    def insert_invite(self, invite: SpecialInvite) -> InsertResult[SpecialInvite]: ...
    # flips an active invite to claimed; false when it was not active
    def claim_invite(self, invite_code: str, wallet: str, at: datetime) -> bool: ...
    def get_invite_claim(self, invite_code: str, wallet: str) -> Optional[InviteClaim]: ...
    def save_invite_claim(self, claim: InviteClaim) -> InviteClaim: ...
    def list_invite_claims(self, invite_code: str) -> List[InviteClaim]: ...


class InMemoryReferralStore:
    """
    key-value layout kept in process memory.

    each table maps a key to the record serialized as JSON, the same way the
    hosted key-value store keeps them, so reads go through load_record.
    insert-if-absent is atomic under a single lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tables: Dict[str, Dict[str, str]] = {}

    # ---------
    # generic table helpers
    # ---------

    def _table(self, name: str) -> Dict[str, str]:
        return self._tables.setdefault(name, {})

    def _get(self, table: str, key: str, model: Type[R]) -> Optional[R]:
        return load_record(model, self._table(table).get(key))

    def _all(self, table: str, model: Type[R]) -> List[R]:
        rows = (load_record(model, raw) for raw in list(self._table(table).values()))
        return [r for r in rows if r is not None]

    def _insert_if_absent(self, table: str, key: str, record: R) -> InsertResult[R]:
        with self._lock:
            rows = self._table(table)
            existing = load_record(type(record), rows.get(key))
            if existing is not None:
                return AlreadyExists(existing)
            rows[key] = dump_record(record)
            return Inserted(record)

    def put_raw(self, table: str, key: str, raw: str) -> None:
        """write an opaque blob, e.g. rows left by an older deployment."""
        with self._lock:
            self._table(table)[key] = raw

    # ---------
    # referral codes
    # ---------

    def get_referral_code(self, code: str) -> Optional[ReferralCode]:
        return self._get("referral_codes", code, ReferralCode)

    def get_code_for_owner(self, owner_address: str) -> Optional[ReferralCode]:
        owned = [
            c
            for c in self._all("referral_codes", ReferralCode)
            if c.owner_address == owner_address and c.is_active
        ]
        owned.sort(key=lambda c: c.created_at)
        return owned[0] if owned else None

    def insert_referral_code(self, record: ReferralCode) -> InsertResult[ReferralCode]:
        return self._insert_if_absent("referral_codes", record.code, record)

    # ---------
    # referral graph
    # ---------

    def get_edge(self, new_user_address: str) -> Optional[ReferralEdge]:
        return self._get("referrals", new_user_address, ReferralEdge)

    def insert_edge(self, edge: ReferralEdge) -> InsertResult[ReferralEdge]:
        return self._insert_if_absent("referrals", edge.new_user_address, edge)

    # ---------
    # clicks
    # ---------

    def insert_click(self, click: ClickEvent) -> ClickEvent:
        with self._lock:
            self._table("referral_clicks")[click.id] = dump_record(click)
        return click

    def find_unconverted_click(self, ip_hash: str, referral_code: str, since: datetime) -> Optional[ClickEvent]:
        candidates = [
            c
            for c in self._all("referral_clicks", ClickEvent)
            if c.ip_hash == ip_hash
            and c.referral_code == referral_code
            and c.converted_wallet is None
            and c.created_at >= since
        ]
        candidates.sort(key=lambda c: c.created_at, reverse=True)
        return candidates[0] if candidates else None

    def mark_click_converted(self, click_id: str, wallet: str, at: datetime) -> bool:
        with self._lock:
            rows = self._table("referral_clicks")
            click = load_record(ClickEvent, rows.get(click_id))
            if click is None or click.converted_wallet is not None:
                return False
            converted = click.model_copy(update={"converted_wallet": wallet, "converted_at": at})
            rows[click_id] = dump_record(converted)
            return True

    def get_click(self, click_id: str) -> Optional[ClickEvent]:
        return self._get("referral_clicks", click_id, ClickEvent)

    # ---------
    # payout ledger
    # ---------

    def get_signup_bonus(self, wallet: str) -> Optional[SignupBonusRecord]:
        return self._get("signup_bonuses", wallet, SignupBonusRecord)

    def insert_signup_bonus(self, record: SignupBonusRecord) -> InsertResult[SignupBonusRecord]:
        return self._insert_if_absent("signup_bonuses", record.recipient_address, record)

    def list_commissions_for_signup(self, wallet: str) -> List[CommissionRecord]:
        rows = [c for c in self._all("commissions", CommissionRecord) if c.source_signup == wallet]
        return sorted(rows, key=lambda c: c.level)

    def insert_commission(self, record: CommissionRecord) -> InsertResult[CommissionRecord]:
        key = f"{record.source_signup}:{record.level}"
        return self._insert_if_absent("commissions", key, record)

    def list_commissions_for_referrer(self, referrer_address: str, limit: int = 50) -> List[CommissionRecord]:
        rows = [c for c in self._all("commissions", CommissionRecord) if c.referrer_address == referrer_address]
        rows.sort(key=lambda c: c.created_at, reverse=True)
        return rows[:limit]

    def commission_totals(self, referrer_address: str) -> Dict[int, Tuple[int, Decimal]]:
        totals: Dict[int, Tuple[int, Decimal]] = {}
        for c in self._all("commissions", CommissionRecord):
            if c.referrer_address != referrer_address:
                continue
            count, amount = totals.get(c.level, (0, Decimal("0")))
            totals[c.level] = (count + 1, amount + c.amount)
        return totals

    def distributed_total(self) -> Decimal:
        bonuses = sum((b.amount for b in self._all("signup_bonuses", SignupBonusRecord)), Decimal("0"))
        commissions = sum((c.amount for c in self._all("commissions", CommissionRecord)), Decimal("0"))
        return bonuses + commissions

    # ---------
    # plans, in-flight legs, audit
    # ---------

    def get_plan(self, wallet: str) -> Optional[DistributionPlan]:
        return self._get("distribution_plans", wallet, DistributionPlan)

    def insert_plan(self, plan: DistributionPlan) -> InsertResult[DistributionPlan]:
        return self._insert_if_absent("distribution_plans", plan.wallet, plan)

    def get_pending_leg(self, reference: str) -> Optional[PendingLeg]:
        return self._get("pending_legs", reference, PendingLeg)

    def insert_pending_leg(self, leg: PendingLeg) -> InsertResult[PendingLeg]:
        return self._insert_if_absent("pending_legs", leg.reference, leg)

    def delete_pending_leg(self, reference: str) -> None:
        with self._lock:
            self._table("pending_legs").pop(reference, None)

    def pending_total(self) -> Decimal:
        return sum((p.amount for p in self._all("pending_legs", PendingLeg)), Decimal("0"))

    def record_attempt(self, attempt: DistributionAttempt) -> None:
        with self._lock:
            self._table("distribution_attempts")[attempt.id] = dump_record(attempt)

    def list_attempts(self, wallet: str) -> List[DistributionAttempt]:
        rows = [a for a in self._all("distribution_attempts", DistributionAttempt) if a.wallet == wallet]
        return sorted(rows, key=lambda a: a.created_at)

    # ---------
    # special invites
    # ---------

    def get_invite(self, invite_code: str) -> Optional[SpecialInvite]:
        return self._get("special_invites", invite_code, SpecialInvite)

    def insert_invite(self, invite: SpecialInvite) -> InsertResult[SpecialInvite]:
        return self._insert_if_absent("special_invites", invite.invite_code, invite)

    def claim_invite(self, invite_code: str, wallet: str, at: datetime) -> bool:
        with self._lock:
            rows = self._table("special_invites")
            invite = load_record(SpecialInvite, rows.get(invite_code))
            if invite is None or invite.status != "active":
                return False
            claimed = invite.model_copy(update={"status": "claimed", "claimed_by": wallet, "claimed_at": at})
            rows[invite_code] = dump_record(claimed)
            return True

    def get_invite_claim(self, invite_code: str, wallet: str) -> Optional[InviteClaim]:
        return self._get("invite_claims", f"{invite_code}:{wallet}", InviteClaim)

    def save_invite_claim(self, claim: InviteClaim) -> InviteClaim:
        with self._lock:
            self._table("invite_claims")[f"{claim.invite_code}:{claim.wallet}"] = dump_record(claim)
        return claim

    def list_invite_claims(self, invite_code: str) -> List[InviteClaim]:
        rows = [c for c in self._all("invite_claims", InviteClaim) if c.invite_code == invite_code]
        return sorted(rows, key=lambda c: c.claimed_at, reverse=True)
