from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from db import repositories as repo
from db.db import get_conn
from referral_store import (
    AlreadyExists,
    ClickEvent,
    CommissionRecord,
    DistributionAttempt,
    DistributionPlan,
    InsertResult,
    Inserted,
    InviteClaim,
    PendingLeg,
    ReferralCode,
    ReferralEdge,
    SignupBonusRecord,
    SpecialInvite,
    load_record,
)


def _tagged(model, row, created):
    record = model.model_validate(row)
    return Inserted(record) if created else AlreadyExists(record)


def _opt(model, row):
    return model.model_validate(row) if row is not None else None


class PostgresReferralStore:
    """
    ReferralStore backed by the tables in db/schema.sql.

    every call runs in its own short transaction; there is no transaction
    spanning a transfer, the unique keys do the serializing.
    """

    def __init__(self, conninfo: str):
        self.conninfo = conninfo

    def _read(self, fn, *args):
        with get_conn(self.conninfo) as conn:
            return fn(conn, *args)

    def _write(self, fn, *args):
        with get_conn(self.conninfo) as conn:
            try:
                result = fn(conn, *args)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    # referral codes

    def get_referral_code(self, code: str) -> Optional[ReferralCode]:
        return _opt(ReferralCode, self._read(repo.get_referral_code, code))

    def get_code_for_owner(self, owner_address: str) -> Optional[ReferralCode]:
        return _opt(ReferralCode, self._read(repo.get_code_for_owner, owner_address))

    def insert_referral_code(self, record: ReferralCode) -> InsertResult[ReferralCode]:
        row, created = self._write(
            repo.insert_referral_code,
            record.code,
            record.owner_address,
            record.is_active,
            record.created_at,
        )
        return _tagged(ReferralCode, row, created)

    # referral graph

    def get_edge(self, new_user_address: str) -> Optional[ReferralEdge]:
        return _opt(ReferralEdge, self._read(repo.get_edge, new_user_address))

    def insert_edge(self, edge: ReferralEdge) -> InsertResult[ReferralEdge]:
        row, created = self._write(repo.insert_edge, edge.model_dump(exclude={"schema_version"}))
        return _tagged(ReferralEdge, row, created)

    # clicks

    def insert_click(self, click: ClickEvent) -> ClickEvent:
        self._write(repo.insert_click, click.model_dump(exclude={"schema_version"}))
        return click

    def find_unconverted_click(self, ip_hash: str, referral_code: str, since: datetime) -> Optional[ClickEvent]:
        return _opt(ClickEvent, self._read(repo.find_unconverted_click, ip_hash, referral_code, since))

    def mark_click_converted(self, click_id: str, wallet: str, at: datetime) -> bool:
        return self._write(repo.mark_click_converted, click_id, wallet, at)

    def get_click(self, click_id: str) -> Optional[ClickEvent]:
        return _opt(ClickEvent, self._read(repo.get_click, click_id))

    # payout ledger

    def get_signup_bonus(self, wallet: str) -> Optional[SignupBonusRecord]:
        return _opt(SignupBonusRecord, self._read(repo.get_signup_bonus, wallet))

    def insert_signup_bonus(self, record: SignupBonusRecord) -> InsertResult[SignupBonusRecord]:
        row, created = self._write(
            repo.insert_signup_bonus,
            record.recipient_address,
            record.amount,
            record.tx_hash,
            record.received_at,
        )
        return _tagged(SignupBonusRecord, row, created)

    def list_commissions_for_signup(self, wallet: str) -> List[CommissionRecord]:
        return [CommissionRecord.model_validate(r) for r in self._read(repo.list_commissions_for_signup, wallet)]

    def insert_commission(self, record: CommissionRecord) -> InsertResult[CommissionRecord]:
        row, created = self._write(repo.insert_commission, record.model_dump(exclude={"schema_version"}))
        return _tagged(CommissionRecord, row, created)

    def list_commissions_for_referrer(self, referrer_address: str, limit: int = 50) -> List[CommissionRecord]:
        rows = self._read(repo.list_commissions_for_referrer, referrer_address, limit)
        return [CommissionRecord.model_validate(r) for r in rows]

    def commission_totals(self, referrer_address: str) -> Dict[int, Tuple[int, Decimal]]:
        return self._read(repo.commission_totals, referrer_address)

    def distributed_total(self) -> Decimal:
        return self._read(repo.distributed_total)

    # plans, in-flight legs, audit

    def get_plan(self, wallet: str) -> Optional[DistributionPlan]:
        return load_record(DistributionPlan, self._read(repo.get_plan_payload, wallet))

    def insert_plan(self, plan: DistributionPlan) -> InsertResult[DistributionPlan]:
        payload, created = self._write(repo.insert_plan, plan.wallet, plan.model_dump(mode="json"))
        if created:
            return Inserted(plan)
        existing = load_record(DistributionPlan, payload)
        if existing is None:
            # a row from an unknown schema blocks the key; surface it rather than overwrite
            raise RuntimeError(f"Unreadable distribution plan stored for {plan.wallet}")
        return AlreadyExists(existing)

    def get_pending_leg(self, reference: str) -> Optional[PendingLeg]:
        return _opt(PendingLeg, self._read(repo.get_pending_leg, reference))

    def insert_pending_leg(self, leg: PendingLeg) -> InsertResult[PendingLeg]:
        row, created = self._write(repo.insert_pending_leg, leg.model_dump(exclude={"schema_version"}))
        return _tagged(PendingLeg, row, created)

    def delete_pending_leg(self, reference: str) -> None:
        self._write(repo.delete_pending_leg, reference)

    def pending_total(self) -> Decimal:
        return self._read(repo.pending_total)

    def record_attempt(self, attempt: DistributionAttempt) -> None:
        self._write(repo.insert_attempt, attempt.model_dump(exclude={"schema_version"}))

    def list_attempts(self, wallet: str) -> List[DistributionAttempt]:
        return [DistributionAttempt.model_validate(r) for r in self._read(repo.list_attempts, wallet)]

    # special invites

    def get_invite(self, invite_code: str) -> Optional[SpecialInvite]:
        return _opt(SpecialInvite, self._read(repo.get_invite, invite_code))

    def insert_invite(self, invite: SpecialInvite) -> InsertResult[SpecialInvite]:
        row, created = self._write(repo.insert_invite, invite.model_dump(exclude={"schema_version"}))
        return _tagged(SpecialInvite, row, created)

    def claim_invite(self, invite_code: str, wallet: str, at: datetime) -> bool:
        return self._write(repo.claim_invite, invite_code, wallet, at)

    def get_invite_claim(self, invite_code: str, wallet: str) -> Optional[InviteClaim]:
        return _opt(InviteClaim, self._read(repo.get_invite_claim, invite_code, wallet))

    def save_invite_claim(self, claim: InviteClaim) -> InviteClaim:
        self._write(repo.upsert_invite_claim, claim.model_dump(exclude={"schema_version"}))
        return claim

    def list_invite_claims(self, invite_code: str) -> List[InviteClaim]:
        return [InviteClaim.model_validate(r) for r in self._read(repo.list_invite_claims, invite_code)]
