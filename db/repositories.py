from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from psycopg import Connection
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb


CLICK_COLUMNS = """
    id::text AS id, referral_code, ip_hash, user_agent, device_type, browser, os,
    source, medium, campaign, referer, landing_page, created_at,
    converted_wallet, converted_at
"""


def _insert_or_fetch(
    conn: Connection,
    insert_sql: str,
    insert_params: tuple,
    select_sql: str,
    select_params: tuple,
) -> Tuple[Dict[str, Any], bool]:
    """
    insert a row unless its unique key is taken (idempotent).
    returns (row, created: bool); on conflict the row is the existing one.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(insert_sql, insert_params)
        row = cur.fetchone()
        if row is not None:
            return row, True

        # conflict: row already exists
        cur.execute(select_sql, select_params)
        existing = cur.fetchone()
        if existing is None:
            # deleted between the two statements; only pending legs do that
            raise RuntimeError("row vanished after insert conflict")
        return existing, False


def _fetch_one(conn: Connection, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params)
        return cur.fetchone()


def _fetch_all(conn: Connection, sql: str, params: tuple) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params)
        return cur.fetchall()


# ---------
# referral codes
# ---------

def get_referral_code(conn: Connection, code: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        "SELECT code, owner_address, is_active, created_at FROM referral_codes WHERE code = %s",
        (code,),
    )


def get_code_for_owner(conn: Connection, owner_address: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        """
        SELECT code, owner_address, is_active, created_at
        FROM referral_codes
        WHERE owner_address = %s AND is_active
        ORDER BY created_at
        LIMIT 1
        """,
        (owner_address,),
    )


def insert_referral_code(conn: Connection, code: str, owner_address: str, is_active: bool, created_at: datetime):
    return _insert_or_fetch(
        conn,
        """
        INSERT INTO referral_codes (code, owner_address, is_active, created_at)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (code) DO NOTHING
        RETURNING code, owner_address, is_active, created_at
        """,
        (code, owner_address, is_active, created_at),
        "SELECT code, owner_address, is_active, created_at FROM referral_codes WHERE code = %s",
        (code,),
    )


# ---------
# referral graph
# ---------

EDGE_COLUMNS = "new_user_address, referrer_address, level, referral_code, source, campaign, created_at"


def get_edge(conn: Connection, new_user_address: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        f"SELECT {EDGE_COLUMNS} FROM referrals WHERE new_user_address = %s",
        (new_user_address,),
    )


def insert_edge(conn: Connection, edge: Dict[str, Any]):
    return _insert_or_fetch(
        conn,
        f"""
        INSERT INTO referrals ({EDGE_COLUMNS})
        VALUES (%(new_user_address)s, %(referrer_address)s, %(level)s, %(referral_code)s,
                %(source)s, %(campaign)s, %(created_at)s)
        ON CONFLICT (new_user_address) DO NOTHING
        RETURNING {EDGE_COLUMNS}
        """,
        edge,
        f"SELECT {EDGE_COLUMNS} FROM referrals WHERE new_user_address = %s",
        (edge["new_user_address"],),
    )


# ---------
# clicks
# ---------

def insert_click(conn: Connection, click: Dict[str, Any]) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO referral_clicks
                (id, referral_code, ip_hash, user_agent, device_type, browser, os,
                 source, medium, campaign, referer, landing_page, created_at)
            VALUES
                (%(id)s, %(referral_code)s, %(ip_hash)s, %(user_agent)s, %(device_type)s,
                 %(browser)s, %(os)s, %(source)s, %(medium)s, %(campaign)s, %(referer)s,
                 %(landing_page)s, %(created_at)s)
            """,
            click,
        )


def find_unconverted_click(conn: Connection, ip_hash: str, referral_code: str, since: datetime):
    return _fetch_one(
        conn,
        f"""
        SELECT {CLICK_COLUMNS}
        FROM referral_clicks
        WHERE ip_hash = %s
          AND referral_code = %s
          AND converted_wallet IS NULL
          AND created_at >= %s
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (ip_hash, referral_code, since),
    )


def mark_click_converted(conn: Connection, click_id: str, wallet: str, at: datetime) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE referral_clicks
            SET converted_wallet = %s, converted_at = %s
            WHERE id = %s AND converted_wallet IS NULL
            """,
            (wallet, at, click_id),
        )
        return cur.rowcount == 1


def get_click(conn: Connection, click_id: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(conn, f"SELECT {CLICK_COLUMNS} FROM referral_clicks WHERE id = %s", (click_id,))


# ---------
# payout ledger
# ---------

BONUS_COLUMNS = "recipient_address, amount, tx_hash, received_at"
COMMISSION_COLUMNS = "referrer_address, level, amount, source_signup, tx_hash, created_at"


def get_signup_bonus(conn: Connection, wallet: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        f"SELECT {BONUS_COLUMNS} FROM signup_bonuses WHERE recipient_address = %s",
        (wallet,),
    )


def insert_signup_bonus(conn: Connection, wallet: str, amount: Decimal, tx_hash: str, received_at: datetime):
    return _insert_or_fetch(
        conn,
        f"""
        INSERT INTO signup_bonuses ({BONUS_COLUMNS})
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (recipient_address) DO NOTHING
        RETURNING {BONUS_COLUMNS}
        """,
        (wallet, amount, tx_hash, received_at),
        f"SELECT {BONUS_COLUMNS} FROM signup_bonuses WHERE recipient_address = %s",
        (wallet,),
    )


def list_commissions_for_signup(conn: Connection, wallet: str) -> List[Dict[str, Any]]:
    return _fetch_all(
        conn,
        f"SELECT {COMMISSION_COLUMNS} FROM signup_commissions WHERE source_signup = %s ORDER BY level",
        (wallet,),
    )


def insert_commission(conn: Connection, record: Dict[str, Any]):
    return _insert_or_fetch(
        conn,
        f"""
        INSERT INTO signup_commissions ({COMMISSION_COLUMNS})
        VALUES (%(referrer_address)s, %(level)s, %(amount)s, %(source_signup)s,
                %(tx_hash)s, %(created_at)s)
        ON CONFLICT (source_signup, level) DO NOTHING
        RETURNING {COMMISSION_COLUMNS}
        """,
        record,
        f"SELECT {COMMISSION_COLUMNS} FROM signup_commissions WHERE source_signup = %s AND level = %s",
        (record["source_signup"], record["level"]),
    )


def list_commissions_for_referrer(conn: Connection, referrer: str, limit: int) -> List[Dict[str, Any]]:
    return _fetch_all(
        conn,
        f"""
        SELECT {COMMISSION_COLUMNS}
        FROM signup_commissions
        WHERE referrer_address = %s
        ORDER BY created_at DESC
        LIMIT %s
        """,
        (referrer, limit),
    )


def commission_totals(conn: Connection, referrer: str) -> Dict[int, Tuple[int, Decimal]]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT level, COUNT(*), COALESCE(SUM(amount), 0)
            FROM signup_commissions
            WHERE referrer_address = %s
            GROUP BY level
            """,
            (referrer,),
        )
        return {level: (count, amount) for level, count, amount in cur.fetchall()}


def distributed_total(conn: Connection) -> Decimal:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT
                (SELECT COALESCE(SUM(amount), 0) FROM signup_bonuses)
              + (SELECT COALESCE(SUM(amount), 0) FROM signup_commissions)
            """
        )
        return cur.fetchone()[0]


# ---------
# plans, pending legs, attempts
# ---------

def get_plan_payload(conn: Connection, wallet: str) -> Optional[Any]:
    row = _fetch_one(conn, "SELECT payload FROM distribution_plans WHERE wallet = %s", (wallet,))
    return row["payload"] if row else None


def insert_plan(conn: Connection, wallet: str, payload: Dict[str, Any]):
    row, created = _insert_or_fetch(
        conn,
        """
        INSERT INTO distribution_plans (wallet, payload)
        VALUES (%s, %s)
        ON CONFLICT (wallet) DO NOTHING
        RETURNING payload
        """,
        (wallet, Jsonb(payload)),
        "SELECT payload FROM distribution_plans WHERE wallet = %s",
        (wallet,),
    )
    return row["payload"], created


PENDING_COLUMNS = "reference, wallet, recipient, level, amount, claimed_at"


def get_pending_leg(conn: Connection, reference: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(conn, f"SELECT {PENDING_COLUMNS} FROM pending_legs WHERE reference = %s", (reference,))


def insert_pending_leg(conn: Connection, leg: Dict[str, Any]):
    return _insert_or_fetch(
        conn,
        f"""
        INSERT INTO pending_legs ({PENDING_COLUMNS})
        VALUES (%(reference)s, %(wallet)s, %(recipient)s, %(level)s, %(amount)s, %(claimed_at)s)
        ON CONFLICT (reference) DO NOTHING
        RETURNING {PENDING_COLUMNS}
        """,
        leg,
        f"SELECT {PENDING_COLUMNS} FROM pending_legs WHERE reference = %s",
        (leg["reference"],),
    )


def delete_pending_leg(conn: Connection, reference: str) -> None:
    with conn.cursor() as cur:
        cur.execute("DELETE FROM pending_legs WHERE reference = %s", (reference,))


def pending_total(conn: Connection) -> Decimal:
    with conn.cursor() as cur:
        cur.execute("SELECT COALESCE(SUM(amount), 0) FROM pending_legs")
        return cur.fetchone()[0]


def insert_attempt(conn: Connection, attempt: Dict[str, Any]) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO distribution_attempts (id, wallet, outcome, required_amount, errors, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                attempt["id"],
                attempt["wallet"],
                attempt["outcome"],
                attempt["required_amount"],
                Jsonb(attempt["errors"]),
                attempt["created_at"],
            ),
        )


def list_attempts(conn: Connection, wallet: str) -> List[Dict[str, Any]]:
    return _fetch_all(
        conn,
        """
        SELECT id::text AS id, wallet, outcome, required_amount, errors, created_at
        FROM distribution_attempts
        WHERE wallet = %s
        ORDER BY created_at
        """,
        (wallet,),
    )


# ---------
# special invites
# ---------

INVITE_COLUMNS = """
    invite_code, referrer_wallet, referrer_code, password_hash, custom_message,
    permanent, status, created_at, expires_at, claimed_by, claimed_at
"""
CLAIM_COLUMNS = """
    invite_code, wallet, claimed_at, completed_at, referral_created,
    bonus_distributed, bonus_amount, bonus_tx_hashes
"""


def get_invite(conn: Connection, invite_code: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        f"SELECT {INVITE_COLUMNS} FROM special_invites WHERE invite_code = %s",
        (invite_code,),
    )


def insert_invite(conn: Connection, invite: Dict[str, Any]):
    return _insert_or_fetch(
        conn,
        f"""
        INSERT INTO special_invites ({INVITE_COLUMNS})
        VALUES (%(invite_code)s, %(referrer_wallet)s, %(referrer_code)s, %(password_hash)s,
                %(custom_message)s, %(permanent)s, %(status)s, %(created_at)s, %(expires_at)s,
                %(claimed_by)s, %(claimed_at)s)
        ON CONFLICT (invite_code) DO NOTHING
        RETURNING {INVITE_COLUMNS}
        """,
        invite,
        f"SELECT {INVITE_COLUMNS} FROM special_invites WHERE invite_code = %s",
        (invite["invite_code"],),
    )


def claim_invite(conn: Connection, invite_code: str, wallet: str, at: datetime) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE special_invites
            SET status = 'claimed', claimed_by = %s, claimed_at = %s
            WHERE invite_code = %s AND status = 'active'
            """,
            (wallet, at, invite_code),
        )
        return cur.rowcount == 1


def get_invite_claim(conn: Connection, invite_code: str, wallet: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        f"SELECT {CLAIM_COLUMNS} FROM special_invite_claims WHERE invite_code = %s AND wallet = %s",
        (invite_code, wallet),
    )


def upsert_invite_claim(conn: Connection, claim: Dict[str, Any]) -> None:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO special_invite_claims ({CLAIM_COLUMNS})
            VALUES (%(invite_code)s, %(wallet)s, %(claimed_at)s, %(completed_at)s,
                    %(referral_created)s, %(bonus_distributed)s, %(bonus_amount)s,
                    %(bonus_tx_hashes)s)
            ON CONFLICT (invite_code, wallet) DO UPDATE SET
                completed_at = EXCLUDED.completed_at,
                referral_created = EXCLUDED.referral_created,
                bonus_distributed = EXCLUDED.bonus_distributed,
                bonus_amount = EXCLUDED.bonus_amount,
                bonus_tx_hashes = EXCLUDED.bonus_tx_hashes
            """,
            {**claim, "bonus_tx_hashes": Jsonb(claim["bonus_tx_hashes"])},
        )


def list_invite_claims(conn: Connection, invite_code: str) -> List[Dict[str, Any]]:
    return _fetch_all(
        conn,
        f"""
        SELECT {CLAIM_COLUMNS}
        FROM special_invite_claims
        WHERE invite_code = %s
        ORDER BY claimed_at DESC
        """,
        (invite_code,),
    )
